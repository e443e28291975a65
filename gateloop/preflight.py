"""Preflight checks run before the lock is taken.

Each check raises PreflightError with remediation steps when its
precondition is not met.
"""

import logging
import shutil
from pathlib import Path

from gateloop.config import LoopConfig
from gateloop.errors import PreflightError

logger = logging.getLogger(__name__)


def check_agent_installed(executable: str) -> None:
    """The agent CLI must be on PATH."""
    if shutil.which(executable) is None:
        raise PreflightError(
            "agent",
            f"Agent executable '{executable}' is not installed or not in PATH.",
            [
                f"Install the '{executable}' CLI and make sure it is on PATH",
                f"Verify installation: {executable} --version",
                "Or point GATELOOP_AGENT_EXECUTABLE at another agent CLI",
            ],
        )


def check_git_repository(start: Path) -> None:
    """start, or one of its parents, must contain a .git marker."""
    current = start.resolve()
    for directory in (current, *current.parents):
        if (directory / ".git").exists():
            return
    raise PreflightError(
        "git",
        "Current directory is not within a git repository.",
        [
            "Initialize a git repository: git init",
            "Or navigate to an existing git repository",
        ],
    )


def check_ledger_exists(path: Path) -> None:
    if not path.is_file():
        raise PreflightError(
            "ledger",
            f"Progress ledger not found at: {path}",
            [
                f"Create {path} with a task table",
                "Or set GATELOOP_PROGRESS_PATH to the ledger location",
            ],
        )


def run_preflight(config: LoopConfig, cwd: Path) -> None:
    """Run all checks in order, stopping at the first failure.

    Raises:
        PreflightError: From the first failing check
    """
    check_agent_installed(config.agent.executable)
    check_git_repository(cwd)
    check_ledger_exists(cwd / config.paths.progress)
    logger.debug("Preflight checks passed")
