"""Shared error types for the gateloop package."""


class OrchestratorError(Exception):
    """Base exception for gateloop errors.

    Use this for user-facing errors that should have actionable messages.
    """

    pass


class ConfigError(OrchestratorError):
    """Configuration value is missing or out of range."""

    pass


class PreflightError(OrchestratorError):
    """A precondition for running the loop is not met.

    Attributes:
        check: Short name of the failed check
        remediation: Steps the operator can take to fix the problem
    """

    def __init__(self, check: str, message: str, remediation: list[str]) -> None:
        super().__init__(message)
        self.check = check
        self.remediation = remediation


class LockConflictError(OrchestratorError):
    """The run lock is already held by another instance.

    Attributes:
        pid: PID recorded in the existing lock file, if readable
        elapsed: How long the existing lock has been held (HH:MM:SS), if known
    """

    def __init__(self, pid: int | None, elapsed: str | None) -> None:
        super().__init__(
            f"Another gateloop instance is running (PID: {pid}, "
            f"started: {elapsed} ago). "
            "Use --force to override or wait for it to complete."
        )
        self.pid = pid
        self.elapsed = elapsed


class AgentNotFoundError(OrchestratorError):
    """The coding-agent executable could not be found on PATH."""

    exit_code = 127

    def __init__(self, executable: str) -> None:
        super().__init__(
            f"Agent executable '{executable}' not found. Is it installed and in PATH?"
        )
        self.executable = executable


class CleanupError(OrchestratorError):
    """One or more cleanup callbacks raised during a drain.

    Attributes:
        errors: Exceptions raised by the callbacks, in execution order
    """

    def __init__(self, errors: list[BaseException]) -> None:
        super().__init__(
            f"{len(errors)} cleanup callback(s) failed: "
            + "; ".join(str(e) for e in errors)
        )
        self.errors = errors


class CleanupTimeoutError(OrchestratorError):
    """A drain did not finish within its timeout."""

    pass
