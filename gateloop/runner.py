"""One-shot agent runs and housekeeping outside the loop.

The plan, task and refactor phases are never scheduled by the loop; an
operator starts them by hand. Each one is a single agent invocation with
a short prompt naming what to work from.
"""

import logging
from collections.abc import Sequence
from pathlib import Path

from gateloop.agent import DEFAULT_RETRY_POLICY, RetryPolicy, run_agent
from gateloop.config import LoopConfig
from gateloop.errors import LockConflictError
from gateloop.lock import RunLock
from gateloop.logging_config import RUN_LOG_PREFIX
from gateloop.models import AgentRunResult

logger = logging.getLogger(__name__)

PHASE_LABELS = {
    "plan": "Plan Agent",
    "task": "Task Agent",
    "refactor": "Refactor Agent",
}


def plan_prompt(prompt: str | None, inputs: Sequence[Path]) -> str:
    """Prompt asking the agent to read input files, then follow the instruction.

    Raises:
        ValueError: If neither a prompt nor an input file is given
    """
    if not prompt and not inputs:
        raise ValueError("Provide a prompt, input files, or both")

    lines: list[str] = []
    if inputs:
        lines.append("Please read and analyze the following input files for context:")
        lines.extend(f"- {path.resolve()}" for path in inputs)
        lines.append("")
    if prompt:
        if inputs:
            lines.append("Then, based on that context:")
        lines.append(prompt)
    return "\n".join(lines).strip()


def task_prompt(plan_path: Path) -> str:
    return f"Read the plan file at {plan_path.resolve()} and generate implementation tasks."


def refactor_prompt(scope: str | None = None) -> str:
    if scope:
        return (
            f'Analyze the codebase at scope "{scope}" and generate '
            "refactoring recommendations."
        )
    return "Analyze the codebase and generate refactoring recommendations."


async def run_phase_once(
    config: LoopConfig,
    phase: str,
    prompt: str,
    cwd: Path,
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
) -> AgentRunResult:
    """Run a single agent invocation for a manual phase.

    Args:
        config: Loaded configuration
        phase: One of plan, task, refactor
        prompt: Prompt handed to the agent
        cwd: Project root the agent runs in
        policy: Retry policy for transient exit codes

    Raises:
        ValueError: If phase is not a manual phase
    """
    if phase not in PHASE_LABELS:
        raise ValueError(f"Not a manual phase: {phase}")
    logger.debug(f"{phase} prompt: {prompt}")
    return await run_agent(
        config.agent, phase, PHASE_LABELS[phase], policy, prompt=prompt, cwd=cwd
    )


def clean_run_files(config: LoopConfig, cwd: Path) -> list[Path]:
    """Remove run logs and a lock left behind by a dead process.

    Args:
        config: Loaded configuration
        cwd: Project root

    Returns:
        Paths that were removed

    Raises:
        LockConflictError: If a live process holds the lock
    """
    lock = RunLock(cwd / config.paths.lock)
    info = lock.info()
    if info.is_locked and not info.is_stale:
        raise LockConflictError(info.pid, info.elapsed)

    removed: list[Path] = []
    if info.is_locked:
        logger.info(f"Removing stale lock {lock.lock_path} (PID {info.pid})")
        lock.release()
        removed.append(lock.lock_path)

    logs_dir = cwd / config.paths.logs
    if logs_dir.is_dir():
        for path in sorted(logs_dir.glob(f"{RUN_LOG_PREFIX}-*.log")):
            path.unlink(missing_ok=True)
            removed.append(path)

    logger.debug(f"Removed {len(removed)} file(s)")
    return removed
