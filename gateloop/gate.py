"""Gate runner: executes verification shell commands.

Each command runs through the host shell in its own session, so a timeout
can terminate the whole process group (SIGTERM, then SIGKILL after a short
grace period) and no descendant outlives the call.

Commands run sequentially or in parallel. In both modes every command runs
even after a failure so the operator gets full diagnostics. Results are
always returned and logged in configuration order.
"""

import asyncio
import logging
import os
import signal
import time
from pathlib import Path

from gateloop.models import GateCommandResult, GateFailed, GatePassed, GateResult

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 300.0
DEFAULT_GRACE_SECONDS = 2.0

TIMEOUT_EXIT_CODE = 124
LAUNCH_FAILURE_EXIT_CODE = 127

# Lines of stderr echoed to the log for a failed command
ERROR_PREVIEW_LINES = 5


def _signal_group(process: asyncio.subprocess.Process, sig: int) -> None:
    try:
        os.killpg(process.pid, sig)
    except ProcessLookupError:
        pass


async def _terminate_group(
    process: asyncio.subprocess.Process, grace_seconds: float
) -> None:
    """Stop a command and all of its descendants."""
    _signal_group(process, signal.SIGTERM)
    try:
        await asyncio.wait_for(process.wait(), timeout=grace_seconds)
    except asyncio.TimeoutError:
        logger.debug(f"PID {process.pid} ignored SIGTERM, sending SIGKILL")
    # Descendants may outlive the leader, so the group is always killed
    _signal_group(process, signal.SIGKILL)
    await process.wait()


async def _read_stream(stream: asyncio.StreamReader, chunks: list[bytes]) -> None:
    while True:
        chunk = await stream.read(65536)
        if not chunk:
            return
        chunks.append(chunk)


def _decode(chunks: list[bytes]) -> str:
    return b"".join(chunks).decode("utf-8", errors="replace")


def _join_error(message: str, stderr: str) -> str:
    """Timeout message followed by whatever the command wrote to stderr."""
    stderr = stderr.strip()
    return f"{message}\n{stderr}" if stderr else message


async def run_command(
    command: str,
    *,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    grace_seconds: float = DEFAULT_GRACE_SECONDS,
    cwd: Path | None = None,
) -> GateCommandResult:
    """Run one gate command and capture its output.

    Args:
        command: Shell command string
        timeout_seconds: Wall-clock limit for the command
        grace_seconds: Time between SIGTERM and SIGKILL on timeout
        cwd: Working directory (default: current directory)

    Returns:
        GateCommandResult. Timeouts report exit code 124, commands that
        cannot be launched report 127.
    """
    start = time.monotonic()
    try:
        process = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            start_new_session=True,
        )
    except OSError as e:
        logger.error(f"Could not launch gate command '{command}': {e}")
        return GateCommandResult(
            command=command,
            is_success=False,
            exit_code=LAUNCH_FAILURE_EXIT_CODE,
            output="",
            error=str(e),
            duration_seconds=time.monotonic() - start,
        )

    stdout_chunks: list[bytes] = []
    stderr_chunks: list[bytes] = []

    # Readers append as data arrives, so output written before a timeout
    # survives the kill
    collect = asyncio.gather(
        _read_stream(process.stdout, stdout_chunks),
        _read_stream(process.stderr, stderr_chunks),
        process.wait(),
    )
    try:
        await asyncio.wait_for(collect, timeout=timeout_seconds)
    except asyncio.TimeoutError:
        await _terminate_group(process, grace_seconds)
        return GateCommandResult(
            command=command,
            is_success=False,
            exit_code=TIMEOUT_EXIT_CODE,
            output=_decode(stdout_chunks),
            error=_join_error(
                f"Command timed out after {timeout_seconds:g}s", _decode(stderr_chunks)
            ),
            duration_seconds=time.monotonic() - start,
        )
    except asyncio.CancelledError:
        await _terminate_group(process, grace_seconds)
        raise

    exit_code = process.returncode if process.returncode is not None else 1
    return GateCommandResult(
        command=command,
        is_success=exit_code == 0,
        exit_code=exit_code,
        output=_decode(stdout_chunks),
        error=_decode(stderr_chunks),
        duration_seconds=time.monotonic() - start,
    )


def _log_result(result: GateCommandResult) -> None:
    if result.is_success:
        logger.info(f"  ✓ {result.command} ({result.duration_seconds:.1f}s)")
        return

    logger.error(
        f"  ✗ {result.command} failed (exit code {result.exit_code}, "
        f"{result.duration_seconds:.1f}s)"
    )
    for line in result.error.strip().splitlines()[:ERROR_PREVIEW_LINES]:
        logger.error(f"      {line}")


async def run_gate(
    commands: list[str],
    *,
    strategy: str = "sequential",
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    grace_seconds: float = DEFAULT_GRACE_SECONDS,
    cwd: Path | None = None,
) -> GateResult:
    """Run all gate commands and aggregate the outcome.

    Args:
        commands: Shell commands in configuration order
        strategy: "sequential" or "parallel"
        timeout_seconds: Per-command timeout
        grace_seconds: Per-command SIGTERM to SIGKILL grace period
        cwd: Working directory for every command

    Returns:
        GatePassed if every command succeeded, otherwise GateFailed whose
        error is the first failing command's error text
    """
    if not commands:
        return GatePassed(results=(), total_duration_seconds=0.0)

    logger.info(f"Running gate ({len(commands)} command(s), {strategy})")
    start = time.monotonic()

    if strategy == "parallel":
        results = tuple(
            await asyncio.gather(
                *(
                    run_command(
                        command,
                        timeout_seconds=timeout_seconds,
                        grace_seconds=grace_seconds,
                        cwd=cwd,
                    )
                    for command in commands
                )
            )
        )
        # Logged only after all finish so outputs never interleave
        for result in results:
            _log_result(result)
    else:
        collected = []
        for command in commands:
            result = await run_command(
                command,
                timeout_seconds=timeout_seconds,
                grace_seconds=grace_seconds,
                cwd=cwd,
            )
            _log_result(result)
            collected.append(result)
        results = tuple(collected)

    total = time.monotonic() - start
    failed = [r for r in results if not r.is_success]
    if not failed:
        logger.info(f"Gate passed in {total:.1f}s")
        return GatePassed(results=results, total_duration_seconds=total)

    first = failed[0]
    error = first.error.strip() or f"{first.command} exited with code {first.exit_code}"
    logger.error(f"Gate failed: {first.command}")
    return GateFailed(
        results=results,
        total_duration_seconds=total,
        error=error,
    )


def can_retry(max_attempts: int, attempts_so_far: int) -> bool:
    """Whether another fix attempt is allowed. Callers own the counter."""
    return attempts_so_far < max_attempts
