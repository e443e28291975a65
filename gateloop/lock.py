"""Single-instance run lock.

The lock is a small text file at a well-known path. Its existence is the
only signal that another instance is running; acquisition is a single
atomic create-or-fail so there is no check-then-act window.

File format:
    Started: 2026-01-31 14:05:09
    PID: 4242
    Command: gateloop run
    State: WORK_LEFT
    Iteration: 3
"""

import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path
from types import TracebackType

from gateloop.errors import LockConflictError
from gateloop.models import LockInfo

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
DEFAULT_OWNER_LABEL = "gateloop run"


def format_elapsed(seconds: float) -> str:
    """Format a duration as HH:MM:SS (hours are not wrapped at 24)."""
    total = max(0, int(seconds))
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


class RunLock:
    """Exclusive lock file for a project checkout.

    Usage:
        lock = RunLock(Path(".gateloop-lock"))
        with lock:
            # Run the loop - lock is held
            ...
        # Lock is released

    Attributes:
        lock_path: Path to the lock file
    """

    def __init__(self, lock_path: Path) -> None:
        self.lock_path = lock_path

    def acquire(
        self,
        owner_label: str = DEFAULT_OWNER_LABEL,
        metadata: dict[str, str] | None = None,
    ) -> None:
        """Create the lock file or fail if it already exists.

        The content is written to a unique temporary sibling first and then
        hard-linked onto the lock path, which fails if the lock exists. A
        reader never sees a partially written lock.

        Args:
            owner_label: Command name recorded in the lock
            metadata: Extra key/value lines (e.g. State, Iteration)

        Raises:
            LockConflictError: If the lock file already exists
            OSError: For filesystem failures other than the conflict
        """
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        content = self._render(os.getpid(), datetime.now(), owner_label, metadata)

        tmp_path = self._write_temp(content)
        try:
            os.link(tmp_path, self.lock_path)
        except FileExistsError:
            existing = self.info()
            raise LockConflictError(existing.pid, existing.elapsed) from None
        finally:
            tmp_path.unlink(missing_ok=True)

        logger.debug(f"Acquired lock {self.lock_path} (PID: {os.getpid()})")

    def release(self) -> None:
        """Remove the lock file.

        Safe to call even if lock doesn't exist.
        """
        try:
            self.lock_path.unlink()
        except FileNotFoundError:
            return
        logger.debug(f"Released lock {self.lock_path}")

    def is_locked(self) -> bool:
        """Existence check only; never use this to decide acquisition."""
        return self.lock_path.exists()

    def info(self) -> LockInfo:
        """Best-effort parse of the lock file.

        Malformed or missing fields come back as None rather than raising.
        """
        try:
            content = self.lock_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return LockInfo(is_locked=False)
        except OSError as e:
            logger.warning(f"Could not read lock file {self.lock_path}: {e}")
            return LockInfo(is_locked=True)

        pid: int | None = None
        started: datetime | None = None
        command: str | None = None
        metadata: dict[str, str] = {}

        for line in content.splitlines():
            key, sep, value = line.partition(":")
            if not sep:
                continue
            key = key.strip()
            value = value.strip()
            if key == "PID":
                try:
                    pid = int(value)
                except ValueError:
                    pid = None
            elif key == "Started":
                try:
                    started = datetime.strptime(value, TIMESTAMP_FORMAT)
                except ValueError:
                    started = None
            elif key == "Command":
                command = value or None
            elif key:
                metadata[key] = value

        elapsed = None
        if started is not None:
            elapsed = format_elapsed((datetime.now() - started).total_seconds())

        return LockInfo(
            is_locked=True,
            pid=pid,
            started=started,
            elapsed=elapsed,
            command=command,
            metadata=metadata,
            is_stale=pid is not None and not self._is_process_running(pid),
        )

    def update(self, metadata: dict[str, str]) -> bool:
        """Replace the metadata lines of a lock held by this process.

        Returns:
            True if the lock was rewritten, False if it is absent or owned
            by another process
        """
        current = self.info()
        if not current.is_locked or current.pid != os.getpid():
            logger.warning(f"Not updating lock {self.lock_path}: not held by us")
            return False

        content = self._render(
            os.getpid(),
            current.started or datetime.now(),
            current.command or DEFAULT_OWNER_LABEL,
            metadata,
        )
        tmp_path = self._write_temp(content)
        try:
            os.replace(tmp_path, self.lock_path)
        except OSError:
            tmp_path.unlink(missing_ok=True)
            raise
        return True

    def _write_temp(self, content: str) -> Path:
        fd, name = tempfile.mkstemp(
            dir=self.lock_path.parent, prefix=f".{self.lock_path.name}.", suffix=".tmp"
        )
        tmp_path = Path(name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
        except OSError:
            tmp_path.unlink(missing_ok=True)
            raise
        return tmp_path

    @staticmethod
    def _render(
        pid: int,
        started: datetime,
        owner_label: str,
        metadata: dict[str, str] | None,
    ) -> str:
        lines = [
            f"Started: {started.strftime(TIMESTAMP_FORMAT)}",
            f"PID: {pid}",
            f"Command: {owner_label}",
        ]
        for key, value in (metadata or {}).items():
            lines.append(f"{key}: {value}")
        return "\n".join(lines) + "\n"

    def _is_process_running(self, pid: int) -> bool:
        """Check if a process with given PID is running."""
        try:
            os.kill(pid, 0)  # Signal 0 doesn't kill, just checks existence
            return True
        except ProcessLookupError:
            return False
        except PermissionError:
            # Process exists but we don't have permission to signal it
            return True

    def __enter__(self) -> "RunLock":
        """Acquire lock on context entry.

        Raises:
            LockConflictError: If the lock file already exists
        """
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Release lock on context exit."""
        self.release()
