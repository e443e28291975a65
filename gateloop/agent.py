"""Coding-agent invocation with retry.

Builds the command line for the external agent CLI, runs it with inherited
stdio so the operator watches it live, and retries a small whitelist of
transient exit codes with capped exponential backoff.
"""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path

from gateloop.config import AgentConfig
from gateloop.errors import AgentNotFoundError
from gateloop.models import AgentFailed, AgentRunResult, AgentSucceeded

logger = logging.getLogger(__name__)

DEFAULT_PROMPT = "Execute agent instructions"
AGENT_FILE_PREFIX = "gateloop"


@dataclass(frozen=True)
class RetryPolicy:
    """When and how long to wait before re-running a failed agent.

    Attributes:
        max_retries: Additional attempts after the first one
        base_delay: Delay before the first retry, in seconds
        max_delay: Upper bound for any single delay, in seconds
        retryable_exit_codes: Exit codes treated as transient
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 4.0
    retryable_exit_codes: tuple[int, ...] = (
        429,  # Rate limit
        52,  # Empty reply from server
        124,  # Timeout
        7,  # Could not connect
        6,  # Could not resolve host
    )

    def delay_for(self, retry: int) -> float:
        """Delay before retry number `retry` (1-based): 1s, 2s, 4s, 4s..."""
        return min(self.base_delay * 2 ** (retry - 1), self.max_delay)


DEFAULT_RETRY_POLICY = RetryPolicy()


def agent_filename(config: AgentConfig, phase: str) -> str:
    """Agent file for a phase, honoring per-phase overrides."""
    return config.agents.get(phase, f"{AGENT_FILE_PREFIX}-{phase}")


def build_args(
    config: AgentConfig, *, agent: str, command: str, prompt: str = ""
) -> list[str]:
    """Build the agent CLI arguments.

    Shape: -p <prompt> --agent=<agent> [--allow-all|--yolo] [--model <m>]
    [extra flags...]. The prompt flag is always present; strict permissions
    add no flag; the per-phase model wins over the global one and the flag
    is omitted when neither is set.

    Args:
        config: Agent configuration
        agent: Agent file name
        command: Phase name used for per-phase model lookup
        prompt: One-shot prompt (empty uses a default instruction)
    """
    args = ["-p", prompt or DEFAULT_PROMPT, f"--agent={agent}"]

    if config.permissions == "allow-all":
        args.append("--allow-all")
    elif config.permissions == "yolo":
        args.append("--yolo")

    model = config.models.get(command) or config.model
    if model:
        args.extend(["--model", model])

    args.extend(config.extra_flags)
    return args


async def spawn_agent(executable: str, args: list[str], cwd: Path | None = None) -> int:
    """Run the agent with inherited stdio and return its exit code.

    Raises:
        AgentNotFoundError: If the executable does not exist
        OSError: If the process cannot be started for another reason
    """
    try:
        process = await asyncio.create_subprocess_exec(executable, *args, cwd=cwd)
    except FileNotFoundError:
        raise AgentNotFoundError(executable) from None

    try:
        returncode = await process.wait()
    except asyncio.CancelledError:
        process.terminate()
        await process.wait()
        raise

    # Killed by a signal: report it the way a shell would
    if returncode < 0:
        return 128 - returncode
    return returncode


async def run_agent(
    config: AgentConfig,
    phase: str,
    label: str,
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    *,
    prompt: str = "",
    cwd: Path | None = None,
) -> AgentRunResult:
    """Run the agent for a phase, retrying transient failures.

    Args:
        config: Agent configuration
        phase: Phase name (impl, review, tidy, fix, ...)
        label: Human-readable label for log lines
        policy: Retry policy
        prompt: One-shot prompt
        cwd: Working directory for the agent

    Returns:
        AgentSucceeded, or AgentFailed with the final exit code. A missing
        executable fails immediately with exit code 127.
    """
    last_exit_code = 1
    last_error: str | None = None

    for attempt in range(policy.max_retries + 1):
        if attempt > 0:
            delay = policy.delay_for(attempt)
            logger.warning(f"Retry {attempt}/{policy.max_retries} after {delay:g}s...")
            await asyncio.sleep(delay)

        args = build_args(
            config, agent=agent_filename(config, phase), command=phase, prompt=prompt
        )
        logger.info(f"{label}: starting {phase} agent")
        logger.debug(f"Spawning agent: {config.executable} {' '.join(args)}")

        try:
            exit_code = await spawn_agent(config.executable, args, cwd=cwd)
        except AgentNotFoundError as e:
            logger.error(str(e))
            return AgentFailed(exit_code=AgentNotFoundError.exit_code, error=str(e))
        except OSError as e:
            logger.warning(f"{label}: failed to start agent: {e}")
            last_error = str(e)
            continue

        if exit_code == 0:
            logger.info(f"{label}: agent finished")
            return AgentSucceeded()

        last_exit_code = exit_code
        last_error = None
        if exit_code not in policy.retryable_exit_codes:
            logger.error(f"{label}: agent exited with code {exit_code}")
            return AgentFailed(
                exit_code=exit_code, error=f"Agent exited with code {exit_code}"
            )
        logger.warning(f"{label}: agent exited with transient code {exit_code}")

    return AgentFailed(
        exit_code=last_exit_code,
        error=last_error
        or f"Failed after {policy.max_retries} retries (exit code {last_exit_code})",
    )
