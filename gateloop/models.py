"""Data models for gateloop.

Defines the orchestration states, ledger task records, gate and agent
results, and the outcome of a whole run. Results that can fail are split
into one dataclass per outcome so only failures carry an error.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Literal


class OrchestrationState(str, Enum):
    """Global state of the progress ledger.

    Classification priority is BLOCKED > IN_REVIEW > WORK_LEFT > DONE.
    NO_PROGRESS means the ledger file does not exist.
    """

    WORK_LEFT = "WORK_LEFT"
    IN_REVIEW = "IN_REVIEW"
    BLOCKED = "BLOCKED"
    DONE = "DONE"
    NO_PROGRESS = "NO_PROGRESS"


class TaskStatus(str, Enum):
    """Status of a single ledger row."""

    COMPLETE = "COMPLETE"
    NOT_STARTED = "NOT STARTED"
    IN_PROGRESS = "IN PROGRESS"
    IN_REVIEW = "IN REVIEW"
    BLOCKED = "BLOCKED"


@dataclass(frozen=True)
class TaskRecord:
    """A task row parsed from the progress ledger.

    Attributes:
        id: Task identifier (e.g. TASK_001)
        title: Task title
        status: Normalized status
        review_status: Review outcome column, if present
        position: Zero-based ordinal among the recognized task rows
    """

    id: str
    title: str
    status: TaskStatus
    review_status: str | None
    position: int


@dataclass(frozen=True)
class TaskStats:
    """Aggregated task counts; remaining = not started + in progress."""

    total: int = 0
    completed: int = 0
    remaining: int = 0
    in_review: int = 0
    blocked: int = 0


@dataclass(frozen=True)
class LockInfo:
    """Best-effort view of the lock file.

    Attributes:
        is_locked: Whether the lock file exists
        pid: Owner PID, None if absent or unparsable
        started: Acquisition time, None if absent or unparsable
        elapsed: Time since acquisition as HH:MM:SS
        command: Owner label recorded at acquisition
        metadata: Extra key/value lines (state label, iteration, ...)
        is_stale: True when the recorded PID is not a running process
    """

    is_locked: bool
    pid: int | None = None
    started: datetime | None = None
    elapsed: str | None = None
    command: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)
    is_stale: bool = False


@dataclass(frozen=True)
class GateCommandResult:
    """Outcome of one gate command.

    error is the captured stderr, or the timeout/launch failure message.
    """

    command: str
    is_success: bool
    exit_code: int
    output: str
    error: str
    duration_seconds: float


@dataclass(frozen=True)
class GatePassed:
    """All gate commands succeeded."""

    results: tuple[GateCommandResult, ...]
    total_duration_seconds: float
    is_success: Literal[True] = True


@dataclass(frozen=True)
class GateFailed:
    """At least one gate command failed.

    Attributes:
        error: Error text of the first failing command
    """

    results: tuple[GateCommandResult, ...]
    total_duration_seconds: float
    error: str
    is_success: Literal[False] = False


GateResult = GatePassed | GateFailed


@dataclass(frozen=True)
class AgentSucceeded:
    """The agent exited with code 0."""

    exit_code: Literal[0] = 0
    is_success: Literal[True] = True


@dataclass(frozen=True)
class AgentFailed:
    """The agent failed after any retries were exhausted."""

    exit_code: int
    error: str
    is_success: Literal[False] = False


AgentRunResult = AgentSucceeded | AgentFailed


RunStatus = Literal[
    "done", "no_progress", "max_iterations", "failed", "locked", "dry_run"
]


@dataclass(frozen=True)
class RunResult:
    """Outcome of one orchestrator run.

    Status values:
        done: Ledger reached DONE
        no_progress: Ledger file missing
        max_iterations: Iteration cap reached before DONE
        failed: Preflight failure, fatal phase failure or unexpected error
        locked: Another instance holds the lock
        dry_run: Dry run completed, nothing executed
    """

    status: RunStatus
    exit_code: int
    iterations: int = 0
    final_state: OrchestrationState | None = None
    error: str | None = None
