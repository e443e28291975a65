"""Run orchestrator: the implement, review, tidy and fix loop.

Each iteration classifies the progress ledger and dispatches to the phase
handler for that state. WORK_LEFT runs the implementation agent and then the
gate, invoking the fix agent on gate failure up to the configured number of
attempts. The loop ends on DONE, NO_PROGRESS, the iteration cap, a fatal
phase failure or an unexpected error. The run lock is held for the whole
loop and released on every exit path, including termination signals.
"""

import logging
import sys
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from opentelemetry import trace

from gateloop import cleanup, ledger
from gateloop.agent import DEFAULT_RETRY_POLICY, RetryPolicy, run_agent
from gateloop.cleanup import CleanupRegistry, SignalHandlers
from gateloop.config import LoopConfig
from gateloop.discord_notifier import (
    Embed,
    post_embed,
    run_finished_embed,
    run_started_embed,
)
from gateloop.errors import AgentNotFoundError, LockConflictError, PreflightError
from gateloop.gate import can_retry, run_gate
from gateloop.lock import DEFAULT_OWNER_LABEL, RunLock
from gateloop.logging_config import attach_run_log, detach_run_log
from gateloop.models import (
    AgentRunResult,
    GateFailed,
    GateResult,
    OrchestrationState,
    RunResult,
)
from gateloop.preflight import run_preflight
from gateloop.telemetry import LoopMetrics

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunOptions:
    """Per-run overrides.

    Attributes:
        max_iterations: Overrides config.loop.max_iterations when set
        dry_run: Classify once and report the planned action only
        force: Remove a conflicting lock and take it over
    """

    max_iterations: int | None = None
    dry_run: bool = False
    force: bool = False


@dataclass(frozen=True)
class PhaseOutcome:
    """Result of one phase handler call.

    Attributes:
        is_success: Whether the phase (and its gate, if any) succeeded
        exit_code: Exit code of the failing agent or gate command
        error: Failure description
        fatal: The loop must stop (e.g. agent executable missing)
    """

    is_success: bool
    exit_code: int = 0
    error: str | None = None
    fatal: bool = False


@dataclass
class RunContext:
    """Everything a phase handler needs for one run."""

    config: LoopConfig
    cwd: Path
    tracer: trace.Tracer
    metrics: LoopMetrics | None = None
    policy: RetryPolicy = DEFAULT_RETRY_POLICY

    @property
    def progress_path(self) -> Path:
        return self.cwd / self.config.paths.progress


PhaseHandler = Callable[[RunContext], Awaitable[PhaseOutcome]]

SUCCESS = PhaseOutcome(is_success=True)


def _outcome_from_agent(result: AgentRunResult) -> PhaseOutcome:
    if result.is_success:
        return SUCCESS
    return PhaseOutcome(
        is_success=False,
        exit_code=result.exit_code,
        error=result.error,
        fatal=result.exit_code == AgentNotFoundError.exit_code,
    )


async def _run_phase_agent(ctx: RunContext, phase: str, label: str) -> AgentRunResult:
    with ctx.tracer.start_as_current_span("gateloop.agent") as span:
        span.set_attribute("agent.phase", phase)
        result = await run_agent(
            ctx.config.agent, phase, label, ctx.policy, cwd=ctx.cwd
        )
        span.set_attribute("agent.exit_code", result.exit_code)
        span.set_attribute("agent.success", result.is_success)

    if ctx.metrics:
        status = "success" if result.is_success else "failed"
        ctx.metrics.agent_runs.add(1, {"phase": phase, "status": status})
    if not result.is_success:
        logger.error(f"{label} failed: {result.error}")
    return result


async def _run_gate(ctx: RunContext) -> GateResult:
    gate = ctx.config.gate
    with ctx.tracer.start_as_current_span("gateloop.gate") as span:
        span.set_attribute("gate.commands", len(gate.commands))
        span.set_attribute("gate.strategy", gate.strategy)
        result = await run_gate(
            gate.commands,
            strategy=gate.strategy,
            timeout_seconds=gate.timeout_seconds,
            cwd=ctx.cwd,
        )
        span.set_attribute("gate.success", result.is_success)
        span.set_attribute("gate.duration_seconds", result.total_duration_seconds)

    if ctx.metrics:
        status = "passed" if result.is_success else "failed"
        ctx.metrics.gate_runs.add(1, {"status": status})
    return result


def _gate_failure_outcome(result: GateFailed) -> PhaseOutcome:
    failed = next(r for r in result.results if not r.is_success)
    return PhaseOutcome(is_success=False, exit_code=failed.exit_code, error=result.error)


async def handle_work_left(ctx: RunContext) -> PhaseOutcome:
    """Implement, then gate; on gate failure alternate fix and gate."""
    impl = await _run_phase_agent(ctx, "impl", "Implementation Agent")
    if not impl.is_success:
        return _outcome_from_agent(impl)

    gate_result = await _run_gate(ctx)
    max_attempts = ctx.config.gate.max_fix_attempts
    attempts = 0

    while isinstance(gate_result, GateFailed) and can_retry(max_attempts, attempts):
        attempts += 1
        logger.warning(
            f"Gate failed. Running fix agent (attempt {attempts}/{max_attempts})..."
        )
        if ctx.metrics:
            ctx.metrics.fix_attempts.add(1)
        ledger.write_failure_notes(ctx.progress_path, gate_result)

        fix = await _run_phase_agent(ctx, "fix", "Fix Agent")
        if not fix.is_success:
            return _outcome_from_agent(fix)

        gate_result = await _run_gate(ctx)

    if isinstance(gate_result, GateFailed):
        logger.error(f"Gate still failing after {attempts} fix attempt(s)")
        return _gate_failure_outcome(gate_result)

    if attempts:
        logger.info(f"Gate passed after {attempts} fix attempt(s)")
    return SUCCESS


async def handle_in_review(ctx: RunContext) -> PhaseOutcome:
    """Run the review agent."""
    return _outcome_from_agent(await _run_phase_agent(ctx, "review", "Review Agent"))


async def handle_blocked(ctx: RunContext) -> PhaseOutcome:
    """Run the tidy agent to unblock tasks."""
    return _outcome_from_agent(await _run_phase_agent(ctx, "tidy", "Tidy Agent"))


# Non-terminal state -> phase. DONE and NO_PROGRESS end the loop.
PHASE_HANDLERS: dict[OrchestrationState, PhaseHandler] = {
    OrchestrationState.WORK_LEFT: handle_work_left,
    OrchestrationState.IN_REVIEW: handle_in_review,
    OrchestrationState.BLOCKED: handle_blocked,
}

PLANNED_ACTIONS: dict[OrchestrationState, str] = {
    OrchestrationState.WORK_LEFT: "Run implementation agent, then the gate",
    OrchestrationState.IN_REVIEW: "Run review agent",
    OrchestrationState.BLOCKED: "Run tidy agent",
    OrchestrationState.DONE: "All tasks complete (no action)",
    OrchestrationState.NO_PROGRESS: "Nothing to do: progress ledger not found",
}


def _log_dry_run(
    state: OrchestrationState, config: LoopConfig, max_iterations: int
) -> None:
    logger.info("=== DRY RUN MODE ===")
    logger.info(f"Current state: {state.value}")
    logger.info(f"Action: {PLANNED_ACTIONS[state]}")
    logger.info(f"Max iterations: {max_iterations}")
    logger.info(f"Gate commands: {', '.join(config.gate.commands) or '(none)'}")
    logger.info(f"Max fix attempts: {config.gate.max_fix_attempts}")
    logger.info("No actions will be executed.")


def _acquire_lock(lock: RunLock, force: bool) -> None:
    """Take the lock, taking it over from another owner when forced.

    Raises:
        LockConflictError: If the lock is held and force is False
    """
    try:
        lock.acquire(DEFAULT_OWNER_LABEL, {"State": "STARTING"})
    except LockConflictError as e:
        if not force:
            raise
        logger.warning(
            f"Overriding existing lock (PID: {e.pid}, held for {e.elapsed})"
        )
        lock.release()
        lock.acquire(DEFAULT_OWNER_LABEL, {"State": "STARTING"})


async def _main_loop(ctx: RunContext, lock: RunLock, max_iterations: int) -> RunResult:
    iteration = 0
    state: OrchestrationState | None = None
    last_failure: PhaseOutcome | None = None

    while iteration < max_iterations:
        iteration += 1
        if ctx.metrics:
            ctx.metrics.iterations.add(1)

        with ctx.tracer.start_as_current_span("gateloop.iteration") as span:
            state = ledger.classify(ctx.progress_path, force_refresh=True)
            span.set_attribute("iteration.number", iteration)
            span.set_attribute("iteration.state", state.value)
            logger.info(f"--- Iteration {iteration}/{max_iterations}: {state.value} ---")
            lock.update({"State": state.value, "Iteration": str(iteration)})

            if state == OrchestrationState.DONE:
                logger.info("All tasks complete! Exiting loop.")
                return RunResult("done", 0, iteration, state)
            if state == OrchestrationState.NO_PROGRESS:
                error = f"Progress ledger not found at {ctx.progress_path}"
                logger.error(error)
                return RunResult("no_progress", 1, iteration, state, error)

            outcome = await PHASE_HANDLERS[state](ctx)
            span.set_attribute("iteration.success", outcome.is_success)

        if outcome.fatal:
            return RunResult("failed", outcome.exit_code, iteration, state, outcome.error)
        last_failure = None if outcome.is_success else outcome

    # The last phase may have finished the work
    state = ledger.classify(ctx.progress_path, force_refresh=True)
    if state == OrchestrationState.DONE:
        logger.info("All tasks complete!")
        return RunResult("done", 0, iteration, state)

    logger.warning(f"Max iterations ({max_iterations}) reached. Exiting.")
    if last_failure is not None and last_failure.exit_code != 0:
        return RunResult(
            "max_iterations", last_failure.exit_code, iteration, state, last_failure.error
        )
    return RunResult("max_iterations", 1, iteration, state)


async def _notify(config: LoopConfig, build: Callable[[], Embed]) -> None:
    if config.discord_enabled:
        await post_embed(config.discord_webhook_url, build())


async def run_loop(
    config: LoopConfig,
    options: RunOptions | None = None,
    *,
    cwd: Path | None = None,
    registry: CleanupRegistry | None = None,
    exit_fn: Callable[[int], Any] = sys.exit,
    tracer: trace.Tracer | None = None,
    metrics: LoopMetrics | None = None,
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
) -> RunResult:
    """Run the orchestration loop until a terminal condition.

    Args:
        config: Loop configuration
        options: Per-run overrides (iteration cap, dry run, force)
        cwd: Project directory; relative config paths resolve against it
        registry: Cleanup registry (default: the process-wide one)
        exit_fn: Called with the signal exit status after a signal drain
        tracer: OpenTelemetry tracer (uses the global provider if None)
        metrics: Metric instruments, or None to skip metrics
        policy: Agent retry policy

    Returns:
        RunResult. Nothing here exits the process except a termination
        signal, which drains the registry and calls exit_fn.
    """
    options = options or RunOptions()
    cwd = cwd or Path.cwd()
    registry = registry if registry is not None else cleanup.registry
    tracer = tracer or trace.get_tracer("gateloop")
    max_iterations = options.max_iterations or config.loop.max_iterations
    ctx = RunContext(config=config, cwd=cwd, tracer=tracer, metrics=metrics, policy=policy)

    if options.dry_run:
        state = ledger.classify(ctx.progress_path, force_refresh=True)
        _log_dry_run(state, config, max_iterations)
        return RunResult("dry_run", 0, final_state=state)

    try:
        run_preflight(config, cwd)
    except PreflightError as e:
        logger.error(f"Preflight check failed ({e.check}): {e}")
        for step in e.remediation:
            logger.error(f"  • {step}")
        return RunResult("failed", 1, error=str(e))

    lock = RunLock(cwd / config.paths.lock)
    try:
        _acquire_lock(lock, options.force)
    except LockConflictError as e:
        logger.error(str(e))
        return RunResult("locked", 1, error=str(e))

    handlers = SignalHandlers(registry, exit_fn=exit_fn)
    run_log: logging.FileHandler | None = None

    def release_lock() -> None:
        try:
            lock.release()
        except OSError as e:
            logger.error(f"Failed to release lock {lock.lock_path}: {e}")

    def close_run_log() -> None:
        if run_log is not None:
            detach_run_log(run_log)

    start = time.monotonic()

    # The lock is held from here on; every exit path below must release it
    try:
        try:
            registry.register(release_lock)
            registry.register(close_run_log)
            handlers.install()
            run_log = attach_run_log(cwd / config.paths.logs)
            logger.info(
                f"Run started (PID lock: {lock.lock_path}, "
                f"log: {run_log.baseFilename})"
            )

            await _notify(
                config,
                lambda: run_started_embed(
                    cwd.name, ledger.statistics(ctx.progress_path)
                ),
            )
            with tracer.start_as_current_span("gateloop.run") as run_span:
                run_span.set_attribute("run.max_iterations", max_iterations)
                result = await _main_loop(ctx, lock, max_iterations)
                run_span.set_attribute("run.status", result.status)
                run_span.set_attribute("run.iterations", result.iterations)
                run_span.set_attribute("run.exit_code", result.exit_code)
        except Exception as e:
            logger.exception(f"Unexpected error, stopping loop: {e}")
            result = RunResult("failed", 1, error=str(e))
        logger.info(
            f"Run finished: {result.status} after {result.iterations} iteration(s) "
            f"(exit code {result.exit_code})"
        )
    finally:
        close_run_log()
        registry.unregister(close_run_log)
        registry.unregister(release_lock)
        handlers.remove()
        registry.reset()
        release_lock()

    duration = time.monotonic() - start
    if metrics:
        metrics.run_duration.record(duration, {"status": result.status})
    await _notify(
        config,
        lambda: run_finished_embed(
            cwd.name, result, ledger.statistics(ctx.progress_path), duration
        ),
    )
    return result
