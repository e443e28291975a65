"""Cleanup registry and termination-signal handling.

Callbacks registered here run when the process is asked to stop (SIGINT,
SIGTERM, SIGHUP) or when the orchestrator drains the registry itself. The
main use is making sure the run lock is released even on Ctrl+C.

Usage:
    handlers = SignalHandlers(registry)
    handlers.install()
    registry.register(lock.release)
    try:
        ...
    finally:
        registry.unregister(lock.release)
        handlers.remove()
"""

import asyncio
import inspect
import logging
import signal
import sys
from collections.abc import Awaitable, Callable
from typing import Any

from gateloop.errors import CleanupError, CleanupTimeoutError

logger = logging.getLogger(__name__)

CleanupCallback = Callable[[], Awaitable[None] | None]

DEFAULT_DRAIN_TIMEOUT = 5.0

# Exit status used after draining on each signal (128 + signal number)
SIGNAL_EXIT_CODES: dict[int, int] = {
    signal.SIGINT: 130,
    signal.SIGTERM: 143,
    signal.SIGHUP: 129,
}


class CleanupRegistry:
    """Ordered teardown callbacks, drained in reverse registration order.

    A drain runs at most once: concurrent or repeated drain() calls all
    await the same drain and see the same outcome. reset() forgets the
    finished drain so the next run can drain again.
    """

    def __init__(self, timeout_seconds: float = DEFAULT_DRAIN_TIMEOUT) -> None:
        self.timeout_seconds = timeout_seconds
        self._callbacks: list[CleanupCallback] = []
        self._drain_task: asyncio.Task[None] | None = None

    def __len__(self) -> int:
        return len(self._callbacks)

    def register(self, fn: CleanupCallback) -> None:
        """Add a callback. Registrations during a drain wait for the next one."""
        self._callbacks.append(fn)

    def unregister(self, fn: CleanupCallback) -> None:
        """Remove a callback if registered. Does not affect a running drain."""
        if fn in self._callbacks:
            self._callbacks.remove(fn)

    @property
    def drained(self) -> bool:
        """True once a drain has finished (until reset)."""
        return self._drain_task is not None and self._drain_task.done()

    async def drain(self) -> None:
        """Run every registered callback once, last registered first.

        Raises:
            CleanupError: If any callback raised (all callbacks still ran)
            CleanupTimeoutError: If the drain took longer than the timeout
        """
        if self._drain_task is None:
            self._drain_task = asyncio.ensure_future(self._drain())
        await asyncio.shield(self._drain_task)

    def reset(self) -> None:
        """Forget the previous drain so callbacks can be drained again."""
        self._drain_task = None

    async def _drain(self) -> None:
        snapshot = list(reversed(self._callbacks))
        for fn in snapshot:
            self._callbacks.remove(fn)

        logger.debug(f"Draining {len(snapshot)} cleanup callback(s)")
        try:
            errors = await asyncio.wait_for(
                self._run_callbacks(snapshot), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError:
            raise CleanupTimeoutError(
                f"Cleanup did not complete within {self.timeout_seconds:g}s"
            ) from None

        if errors:
            raise CleanupError(errors)

    async def _run_callbacks(
        self, callbacks: list[CleanupCallback]
    ) -> list[BaseException]:
        errors: list[BaseException] = []
        for fn in callbacks:
            try:
                result = fn()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Cleanup callback {fn!r} failed: {e}")
                errors.append(e)
        return errors


# Process-wide registry shared by the orchestrator and its phases
registry = CleanupRegistry()


class SignalHandlers:
    """Termination-signal listeners owned by one orchestrator run.

    On SIGINT/SIGTERM/SIGHUP the registry is drained and then exit_fn is
    called with 130/143/129. A second SIGINT exits immediately. Drain
    failures are logged, never raised to the signal machinery.

    Attributes:
        registry: Registry drained on signal
    """

    def __init__(
        self,
        registry: CleanupRegistry,
        exit_fn: Callable[[int], Any] = sys.exit,
    ) -> None:
        self.registry = registry
        self._exit = exit_fn
        self._loop: asyncio.AbstractEventLoop | None = None
        self._installed: list[int] = []
        self._previous: dict[int, Any] = {}
        self._signal_received = False
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def installed(self) -> bool:
        return bool(self._installed)

    def install(self) -> None:
        """Attach listeners on the running event loop."""
        if self._installed:
            return
        loop = asyncio.get_running_loop()
        self._loop = loop
        for sig in SIGNAL_EXIT_CODES:
            try:
                loop.add_signal_handler(sig, self._handle, sig)
            except (NotImplementedError, RuntimeError):
                # Loops without signal support (or not in the main thread)
                self._previous[sig] = signal.signal(
                    sig, lambda s, _frame: loop.call_soon_threadsafe(self._handle, s)
                )
            self._installed.append(sig)

    def remove(self) -> None:
        """Detach listeners. Safe to call more than once."""
        for sig in self._installed:
            if sig in self._previous:
                signal.signal(sig, self._previous.pop(sig))
            elif self._loop is not None and not self._loop.is_closed():
                self._loop.remove_signal_handler(sig)
        self._installed.clear()
        self._signal_received = False

    def _handle(self, sig: int) -> None:
        exit_code = SIGNAL_EXIT_CODES[sig]
        if self._signal_received and sig == signal.SIGINT:
            logger.warning("Force exiting...")
            self._exit(exit_code)
            return

        if self._loop is None:
            logger.warning(f"Ignoring signal {sig}: handlers are not installed")
            return

        self._signal_received = True
        logger.warning(f"Received {signal.Signals(sig).name}, cleaning up...")
        task = self._loop.create_task(self._drain_and_exit(exit_code))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _drain_and_exit(self, exit_code: int) -> None:
        try:
            await self.registry.drain()
        except (CleanupError, CleanupTimeoutError) as e:
            logger.error(f"Cleanup during shutdown failed: {e}")
        self._exit(exit_code)
