"""Tests for the run lock."""

import os
from datetime import datetime, timedelta
from pathlib import Path

import pytest

from gateloop.errors import LockConflictError
from gateloop.lock import RunLock, format_elapsed


class TestRunLockAcquire:
    """Tests for RunLock.acquire()."""

    def test_acquire_creates_lock_file(self, tmp_path: Path) -> None:
        """Acquiring lock creates a lock file."""
        lock = RunLock(tmp_path / ".gateloop-lock")

        lock.acquire()

        assert (tmp_path / ".gateloop-lock").exists()

    def test_acquire_writes_pid_timestamp_and_metadata(self, tmp_path: Path) -> None:
        """Lock file records PID, start time, owner label and metadata."""
        lock_file = tmp_path / ".gateloop-lock"
        lock = RunLock(lock_file)

        lock.acquire("gateloop run", {"State": "WORK_LEFT", "Iteration": "1"})

        lines = lock_file.read_text().splitlines()
        assert lines[0].startswith("Started: ")
        assert lines[1] == f"PID: {os.getpid()}"
        assert "Command: gateloop run" in lines
        assert "State: WORK_LEFT" in lines
        assert "Iteration: 1" in lines

    def test_acquire_creates_parent_directories(self, tmp_path: Path) -> None:
        """Missing parent directories are created."""
        lock = RunLock(tmp_path / "a" / "b" / "lock")

        lock.acquire()

        assert lock.is_locked()

    def test_second_acquire_reports_owner_pid(self, tmp_path: Path) -> None:
        """A second acquire before release fails naming the first owner."""
        lock = RunLock(tmp_path / ".gateloop-lock")
        lock.acquire()

        with pytest.raises(LockConflictError) as exc_info:
            RunLock(tmp_path / ".gateloop-lock").acquire()

        assert str(os.getpid()) in str(exc_info.value)
        assert exc_info.value.pid == os.getpid()
        assert exc_info.value.elapsed is not None
        assert "--force" in str(exc_info.value)

    def test_existing_dead_owner_still_conflicts(self, tmp_path: Path) -> None:
        """File existence alone decides acquisition, stale or not."""
        lock_file = tmp_path / ".gateloop-lock"
        lock_file.write_text("Started: 2020-01-01 00:00:00\nPID: 99999999\n")

        with pytest.raises(LockConflictError) as exc_info:
            RunLock(lock_file).acquire()

        assert exc_info.value.pid == 99999999

    def test_conflict_with_garbage_lock_has_null_fields(self, tmp_path: Path) -> None:
        """Unparsable lock content degrades to None fields."""
        lock_file = tmp_path / ".gateloop-lock"
        lock_file.write_text("not a lock file")

        with pytest.raises(LockConflictError) as exc_info:
            RunLock(lock_file).acquire()

        assert exc_info.value.pid is None
        assert exc_info.value.elapsed is None

    def test_no_temp_files_left_behind(self, tmp_path: Path) -> None:
        """Temporary siblings are removed on success and on conflict."""
        lock = RunLock(tmp_path / ".gateloop-lock")
        lock.acquire()
        with pytest.raises(LockConflictError):
            lock.acquire()

        assert [p.name for p in tmp_path.iterdir()] == [".gateloop-lock"]


class TestRunLockRelease:
    """Tests for RunLock.release()."""

    def test_round_trip(self, tmp_path: Path) -> None:
        """acquire, release, acquire again succeeds and leaves no file at the end."""
        lock = RunLock(tmp_path / ".gateloop-lock")

        lock.acquire()
        lock.release()
        assert not lock.is_locked()

        lock.acquire()
        lock.release()
        assert not (tmp_path / ".gateloop-lock").exists()

    def test_release_idempotent(self, tmp_path: Path) -> None:
        """Releasing a non-existent lock doesn't raise."""
        lock = RunLock(tmp_path / ".gateloop-lock")

        lock.release()
        lock.release()


class TestRunLockInfo:
    """Tests for RunLock.info()."""

    def test_info_unlocked(self, tmp_path: Path) -> None:
        info = RunLock(tmp_path / ".gateloop-lock").info()

        assert info.is_locked is False
        assert info.pid is None

    def test_info_parses_fields(self, tmp_path: Path) -> None:
        """info() returns owner, start time, elapsed and metadata."""
        lock_file = tmp_path / ".gateloop-lock"
        started = datetime.now() - timedelta(hours=1, minutes=2, seconds=3)
        lock_file.write_text(
            f"Started: {started:%Y-%m-%d %H:%M:%S}\n"
            f"PID: {os.getpid()}\n"
            "Command: gateloop run\n"
            "State: IN_REVIEW\n"
        )

        info = RunLock(lock_file).info()

        assert info.is_locked is True
        assert info.pid == os.getpid()
        assert info.command == "gateloop run"
        assert info.metadata == {"State": "IN_REVIEW"}
        assert info.elapsed is not None
        assert info.elapsed.startswith("01:02:")
        assert info.is_stale is False

    def test_info_flags_dead_owner_as_stale(self, tmp_path: Path) -> None:
        """A PID that is not running is reported as stale."""
        lock_file = tmp_path / ".gateloop-lock"
        lock_file.write_text("PID: 99999999\n")

        info = RunLock(lock_file).info()

        assert info.is_stale is True
        assert info.started is None

    def test_info_never_raises_on_garbage(self, tmp_path: Path) -> None:
        lock_file = tmp_path / ".gateloop-lock"
        lock_file.write_text("PID: abc\nStarted: yesterday\n:::\n")

        info = RunLock(lock_file).info()

        assert info.is_locked is True
        assert info.pid is None
        assert info.started is None


class TestRunLockUpdate:
    """Tests for RunLock.update()."""

    def test_update_rewrites_metadata_keeps_start(self, tmp_path: Path) -> None:
        lock = RunLock(tmp_path / ".gateloop-lock")
        lock.acquire("gateloop run", {"State": "WORK_LEFT"})
        before = lock.info()

        assert lock.update({"State": "IN_REVIEW", "Iteration": "2"}) is True

        after = lock.info()
        assert after.started == before.started
        assert after.metadata == {"State": "IN_REVIEW", "Iteration": "2"}
        assert after.command == "gateloop run"

    def test_update_refuses_foreign_lock(self, tmp_path: Path) -> None:
        """Another owner's lock is left untouched."""
        lock_file = tmp_path / ".gateloop-lock"
        lock_file.write_text("PID: 99999999\n")

        assert RunLock(lock_file).update({"State": "DONE"}) is False
        assert lock_file.read_text() == "PID: 99999999\n"


class TestRunLockContextManager:
    """Tests for RunLock context manager."""

    def test_context_manager_acquires_and_releases(self, tmp_path: Path) -> None:
        """Context manager acquires on enter and releases on exit."""
        lock_file = tmp_path / ".gateloop-lock"

        with RunLock(lock_file):
            assert lock_file.exists()

        assert not lock_file.exists()

    def test_context_manager_releases_on_exception(self, tmp_path: Path) -> None:
        """Lock is released even when the body raises."""
        lock_file = tmp_path / ".gateloop-lock"

        with pytest.raises(ValueError):
            with RunLock(lock_file):
                raise ValueError("boom")

        assert not lock_file.exists()


class TestFormatElapsed:
    """Tests for format_elapsed()."""

    @pytest.mark.parametrize(
        "seconds,expected",
        [(0, "00:00:00"), (61, "00:01:01"), (3723, "01:02:03"), (90000, "25:00:00")],
    )
    def test_format(self, seconds: float, expected: str) -> None:
        assert format_elapsed(seconds) == expected

    def test_negative_clamped(self) -> None:
        assert format_elapsed(-5) == "00:00:00"
