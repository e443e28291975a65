"""Configuration for gateloop.

Provides centralized configuration with sensible defaults and environment
variable overrides for ledger and lock paths, agent invocation, gate
commands, loop limits, notifications and telemetry.
"""

import difflib
import json
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from gateloop.errors import ConfigError

logger = logging.getLogger(__name__)

Permissions = Literal["allow-all", "yolo", "strict"]
GateStrategy = Literal["sequential", "parallel"]

PERMISSION_VALUES: tuple[str, ...] = ("allow-all", "yolo", "strict")
STRATEGY_VALUES: tuple[str, ...] = ("sequential", "parallel")

ENV_PREFIX = "GATELOOP_"

# Phases that may carry per-phase model or agent overrides
PHASE_NAMES: tuple[str, ...] = (
    "plan",
    "task",
    "refactor",
    "impl",
    "review",
    "fix",
    "tidy",
)


@dataclass
class PathsConfig:
    """Filesystem locations used by the loop."""

    progress: Path = field(default_factory=lambda: Path("docs/PROGRESS.md"))
    lock: Path = field(default_factory=lambda: Path(".gateloop-lock"))
    logs: Path = field(default_factory=lambda: Path(".gateloop-logs"))


@dataclass
class AgentConfig:
    """How the external coding agent is invoked.

    Attributes:
        executable: Agent CLI entry point looked up on PATH
        permissions: allow-all, yolo or strict (strict passes no flag)
        model: Global default model, used when a phase has no override
        models: Per-phase model overrides
        extra_flags: Flags appended verbatim after the generated ones
        agents: Per-phase agent file overrides (default: gateloop-<phase>)
    """

    executable: str = "copilot"
    permissions: Permissions = "allow-all"
    model: str | None = None
    models: dict[str, str] = field(default_factory=dict)
    extra_flags: list[str] = field(default_factory=list)
    agents: dict[str, str] = field(default_factory=dict)


@dataclass
class GateConfig:
    """Verification gate settings."""

    commands: list[str] = field(default_factory=list)
    max_fix_attempts: int = 5
    strategy: GateStrategy = "sequential"
    timeout_seconds: float = 300.0


@dataclass
class LoopSettings:
    """Outer loop limits."""

    max_iterations: int = 100


@dataclass
class LoopConfig:
    """Configuration for a gateloop run.

    All settings have sensible defaults but can be overridden via environment
    variables using the from_env() factory method.
    """

    paths: PathsConfig = field(default_factory=PathsConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    gate: GateConfig = field(default_factory=GateConfig)
    loop: LoopSettings = field(default_factory=LoopSettings)

    # Notifications
    discord_webhook_url: str = field(
        default_factory=lambda: os.getenv("DISCORD_WEBHOOK_URL", "")
    )

    # Telemetry settings
    otlp_endpoint: str = field(
        default_factory=lambda: os.getenv("OTLP_ENDPOINT", "http://localhost:4317")
    )
    service_name: str = "gateloop"

    @property
    def discord_enabled(self) -> bool:
        """Discord notifications are enabled when a webhook URL is set."""
        return bool(self.discord_webhook_url)

    @classmethod
    def from_env(cls) -> "LoopConfig":
        """Load config with environment variable overrides.

        Environment variables:
            GATELOOP_PROGRESS_PATH: Ledger file (default: docs/PROGRESS.md)
            GATELOOP_LOCK_PATH: Lock file (default: .gateloop-lock)
            GATELOOP_LOGS_PATH: Run log directory (default: .gateloop-logs)
            GATELOOP_MAX_ITERATIONS: Loop cap (default: 100)
            GATELOOP_MAX_FIX_ATTEMPTS: Fix attempts per gate failure (default: 5)
            GATELOOP_PERMISSIONS: allow-all | yolo | strict
            GATELOOP_MODEL: Global default model
            GATELOOP_AGENT_EXECUTABLE: Agent CLI name (default: copilot)
            GATELOOP_GATE_COMMANDS: JSON array of shell commands
            GATELOOP_GATE_STRATEGY: sequential | parallel
            GATELOOP_GATE_TIMEOUT: Per-command timeout in seconds (default: 300)

        Raises:
            ConfigError: If a variable has a malformed value
        """
        env = os.environ
        _warn_unknown_env_vars(env)

        config = cls()
        paths = config.paths
        if "GATELOOP_PROGRESS_PATH" in env:
            paths.progress = Path(env["GATELOOP_PROGRESS_PATH"])
        if "GATELOOP_LOCK_PATH" in env:
            paths.lock = Path(env["GATELOOP_LOCK_PATH"])
        if "GATELOOP_LOGS_PATH" in env:
            paths.logs = Path(env["GATELOOP_LOGS_PATH"])

        if "GATELOOP_MAX_ITERATIONS" in env:
            config.loop.max_iterations = _parse_positive_int(
                "GATELOOP_MAX_ITERATIONS", env["GATELOOP_MAX_ITERATIONS"]
            )
        if "GATELOOP_MAX_FIX_ATTEMPTS" in env:
            config.gate.max_fix_attempts = _parse_non_negative_int(
                "GATELOOP_MAX_FIX_ATTEMPTS", env["GATELOOP_MAX_FIX_ATTEMPTS"]
            )
        if "GATELOOP_GATE_TIMEOUT" in env:
            config.gate.timeout_seconds = _parse_positive_float(
                "GATELOOP_GATE_TIMEOUT", env["GATELOOP_GATE_TIMEOUT"]
            )

        if "GATELOOP_PERMISSIONS" in env:
            config.agent.permissions = env["GATELOOP_PERMISSIONS"]  # type: ignore[assignment]
        if "GATELOOP_MODEL" in env:
            config.agent.model = env["GATELOOP_MODEL"] or None
        if "GATELOOP_AGENT_EXECUTABLE" in env:
            config.agent.executable = env["GATELOOP_AGENT_EXECUTABLE"]

        if "GATELOOP_GATE_COMMANDS" in env:
            config.gate.commands = _parse_command_list(env["GATELOOP_GATE_COMMANDS"])
        if "GATELOOP_GATE_STRATEGY" in env:
            config.gate.strategy = env["GATELOOP_GATE_STRATEGY"]  # type: ignore[assignment]

        config.validate()
        return config

    def validate(self) -> None:
        """Check value constraints.

        Raises:
            ConfigError: On the first invalid value found
        """
        if self.agent.permissions not in PERMISSION_VALUES:
            raise ConfigError(
                f"Invalid permissions '{self.agent.permissions}'. "
                f"Expected one of: {', '.join(PERMISSION_VALUES)}"
            )
        if self.gate.strategy not in STRATEGY_VALUES:
            raise ConfigError(
                f"Invalid gate strategy '{self.gate.strategy}'. "
                f"Expected one of: {', '.join(STRATEGY_VALUES)}"
            )
        if self.gate.max_fix_attempts < 0:
            raise ConfigError("gate.max_fix_attempts must not be negative")
        if self.gate.timeout_seconds <= 0:
            raise ConfigError("gate.timeout_seconds must be positive")
        if self.loop.max_iterations <= 0:
            raise ConfigError("loop.max_iterations must be positive")
        if not self.agent.executable:
            raise ConfigError("agent.executable must not be empty")

        unknown = set(self.agent.models) - set(PHASE_NAMES)
        unknown |= set(self.agent.agents) - set(PHASE_NAMES)
        if unknown:
            raise ConfigError(f"Unknown phase name(s): {', '.join(sorted(unknown))}")


# Every GATELOOP_* variable from_env() understands
KNOWN_ENV_VARS: tuple[str, ...] = (
    "GATELOOP_PROGRESS_PATH",
    "GATELOOP_LOCK_PATH",
    "GATELOOP_LOGS_PATH",
    "GATELOOP_MAX_ITERATIONS",
    "GATELOOP_MAX_FIX_ATTEMPTS",
    "GATELOOP_PERMISSIONS",
    "GATELOOP_MODEL",
    "GATELOOP_AGENT_EXECUTABLE",
    "GATELOOP_GATE_COMMANDS",
    "GATELOOP_GATE_STRATEGY",
    "GATELOOP_GATE_TIMEOUT",
)


def _warn_unknown_env_vars(env: Mapping[str, str]) -> None:
    """Warn about GATELOOP_* variables that look like typos."""
    for name in env:
        if not name.startswith(ENV_PREFIX) or name in KNOWN_ENV_VARS:
            continue
        suggestions = difflib.get_close_matches(name, KNOWN_ENV_VARS, n=1)
        if suggestions:
            logger.warning(
                f'Unknown environment variable "{name}". '
                f'Did you mean "{suggestions[0]}"?'
            )
        else:
            logger.warning(
                f'Unknown environment variable "{name}". '
                f"Valid variables: {', '.join(KNOWN_ENV_VARS)}"
            )


def _parse_positive_int(name: str, value: str) -> int:
    try:
        parsed = int(value)
    except ValueError:
        raise ConfigError(f"{name} must be a positive integer, got '{value}'") from None
    if parsed <= 0:
        raise ConfigError(f"{name} must be a positive integer, got '{value}'")
    return parsed


def _parse_non_negative_int(name: str, value: str) -> int:
    try:
        parsed = int(value)
    except ValueError:
        raise ConfigError(f"{name} must be a non-negative integer, got '{value}'") from None
    if parsed < 0:
        raise ConfigError(f"{name} must be a non-negative integer, got '{value}'")
    return parsed


def _parse_positive_float(name: str, value: str) -> float:
    try:
        parsed = float(value)
    except ValueError:
        raise ConfigError(f"{name} must be a positive number, got '{value}'") from None
    if parsed <= 0:
        raise ConfigError(f"{name} must be a positive number, got '{value}'")
    return parsed


def _parse_command_list(value: str) -> list[str]:
    """Parse GATELOOP_GATE_COMMANDS (a JSON array of strings)."""
    try:
        commands = json.loads(value)
    except json.JSONDecodeError as e:
        raise ConfigError(
            f"GATELOOP_GATE_COMMANDS must be a JSON array of strings: {e}"
        ) from e
    if not isinstance(commands, list) or not all(
        isinstance(c, str) for c in commands
    ):
        raise ConfigError("GATELOOP_GATE_COMMANDS must be a JSON array of strings")
    return commands
