"""Discord webhook notifications for run start and finish.

Embeds are plain dicts in the webhook payload shape. Delivery failures
are logged and reported as False, never raised, so a broken webhook
cannot stop a run.
"""

import logging
from datetime import datetime, timezone
from typing import Any

import httpx

from gateloop.lock import format_elapsed
from gateloop.models import RunResult, TaskStats

logger = logging.getLogger(__name__)

WEBHOOK_TIMEOUT_SECONDS = 5.0

# Tail of a failure message shown in the finish embed
ERROR_TAIL_CHARS = 1000

BLUE = 0x3498DB
GREEN = 0x2ECC71
ORANGE = 0xF39C12
RED = 0xE74C3C

# status -> (title, color)
FINISH_STYLES: dict[str, tuple[str, int]] = {
    "done": ("🎉 Run Complete", GREEN),
    "dry_run": ("🔍 Dry Run Finished", GREEN),
    "max_iterations": ("⏹ Iteration Limit Reached", ORANGE),
    "no_progress": ("❌ No Progress Ledger", RED),
    "locked": ("🔒 Already Running", RED),
    "failed": ("❌ Run Failed", RED),
}

Embed = dict[str, Any]


async def post_embed(
    webhook_url: str, embed: Embed, timeout: float = WEBHOOK_TIMEOUT_SECONDS
) -> bool:
    """Post one embed to a Discord webhook.

    Returns:
        True if Discord accepted the message
    """
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.post(webhook_url, json={"embeds": [embed]})
        response.raise_for_status()
    except (httpx.HTTPError, httpx.InvalidURL) as e:
        logger.warning(f"Discord notification not delivered: {e}")
        return False
    return True


def run_started_embed(project: str, stats: TaskStats) -> Embed:
    return {
        "title": f"🚀 Run Started: {project}",
        "description": (
            f"{stats.completed}/{stats.total} tasks complete, "
            f"{stats.remaining} remaining."
        ),
        "color": BLUE,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def run_finished_embed(
    project: str, result: RunResult, stats: TaskStats, duration_s: float
) -> Embed:
    """Summary of a finished run: outcome, task counts and the error tail."""
    title, color = FINISH_STYLES.get(result.status, (result.status, RED))

    description = f"{project}: {result.iterations} iteration(s)."
    if result.error:
        tail = result.error.strip()
        if len(tail) > ERROR_TAIL_CHARS:
            tail = "…" + tail[-ERROR_TAIL_CHARS:]
        description += f"\n```\n{tail}\n```"

    return {
        "title": title,
        "description": description,
        "color": color,
        "fields": [
            {"name": "Tasks", "value": f"{stats.completed}/{stats.total}", "inline": True},
            {"name": "Exit Code", "value": str(result.exit_code), "inline": True},
            {"name": "Duration", "value": format_elapsed(duration_s), "inline": True},
        ],
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
