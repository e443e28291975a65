"""Tests for Discord notifier module.

Tests cover:
- post_embed() sends the embed and reports delivery
- Webhook failures are logged, not raised
- Run started/finished embeds
"""

from datetime import datetime
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from gateloop.discord_notifier import (
    BLUE,
    ERROR_TAIL_CHARS,
    GREEN,
    ORANGE,
    RED,
    WEBHOOK_TIMEOUT_SECONDS,
    post_embed,
    run_finished_embed,
    run_started_embed,
)
from gateloop.models import OrchestrationState, RunResult, TaskStats

WEBHOOK = "https://discord.com/api/webhooks/test"


def mock_async_client(mock_client_class) -> AsyncMock:
    mock_client = AsyncMock()
    mock_client.__aenter__.return_value = mock_client
    mock_client.__aexit__.return_value = None
    mock_client.post.return_value = MagicMock()
    mock_client_class.return_value = mock_client
    return mock_client


class TestPostEmbed:
    """Test post_embed()."""

    @pytest.mark.asyncio
    async def test_posts_embed_to_webhook(self):
        with patch("gateloop.discord_notifier.httpx.AsyncClient") as mock_client_class:
            mock_client = mock_async_client(mock_client_class)

            delivered = await post_embed(WEBHOOK, {"title": "My Title"})

        assert delivered is True
        mock_client_class.assert_called_once_with(timeout=WEBHOOK_TIMEOUT_SECONDS)
        mock_client.post.assert_awaited_once_with(
            WEBHOOK, json={"embeds": [{"title": "My Title"}]}
        )

    @pytest.mark.asyncio
    async def test_http_error_is_logged(self, caplog):
        with patch("gateloop.discord_notifier.httpx.AsyncClient") as mock_client_class:
            mock_client = mock_async_client(mock_client_class)
            response = mock_client.post.return_value
            response.raise_for_status.side_effect = httpx.HTTPStatusError(
                "404 Not Found", request=MagicMock(), response=MagicMock()
            )

            delivered = await post_embed(WEBHOOK, {"title": "T"})

        assert delivered is False
        assert "Discord notification not delivered: 404 Not Found" in caplog.text

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [httpx.ReadTimeout("slow"), httpx.ConnectError("refused")],
    )
    async def test_transport_failures_do_not_raise(self, caplog, error):
        with patch("gateloop.discord_notifier.httpx.AsyncClient") as mock_client_class:
            mock_client = mock_async_client(mock_client_class)
            mock_client.post.side_effect = error

            delivered = await post_embed(WEBHOOK, {"title": "T"})

        assert delivered is False
        assert "Discord notification not delivered" in caplog.text

    @pytest.mark.asyncio
    async def test_invalid_url_does_not_raise(self, caplog):
        assert await post_embed("not a url", {"title": "T"}) is False
        assert "Discord notification not delivered" in caplog.text


class TestRunStartedEmbed:
    """Test the run started embed."""

    def test_describes_task_counts(self):
        stats = TaskStats(total=5, completed=2, remaining=3)

        embed = run_started_embed("myproject", stats)

        assert embed["title"] == "🚀 Run Started: myproject"
        assert "2/5 tasks complete, 3 remaining" in embed["description"]
        assert embed["color"] == BLUE
        assert datetime.fromisoformat(embed["timestamp"]).tzinfo is not None


class TestRunFinishedEmbed:
    """Test the run finished embed."""

    def test_done_is_green(self):
        result = RunResult("done", 0, 4, OrchestrationState.DONE)
        stats = TaskStats(total=3, completed=3)

        embed = run_finished_embed("myproject", result, stats, 150.0)

        assert embed["title"] == "🎉 Run Complete"
        assert embed["color"] == GREEN
        assert embed["description"] == "myproject: 4 iteration(s)."
        assert embed["fields"] == [
            {"name": "Tasks", "value": "3/3", "inline": True},
            {"name": "Exit Code", "value": "0", "inline": True},
            {"name": "Duration", "value": "00:02:30", "inline": True},
        ]

    def test_max_iterations_is_orange(self):
        result = RunResult("max_iterations", 2, 10, OrchestrationState.WORK_LEFT)

        embed = run_finished_embed("p", result, TaskStats(), 5.0)

        assert embed["color"] == ORANGE

    def test_failure_shows_end_of_long_error(self):
        error = "head " + "x" * 5000 + " last line"
        result = RunResult("failed", 1, 1, error=error)

        embed = run_finished_embed("p", result, TaskStats(), 5.0)

        assert embed["color"] == RED
        assert "head" not in embed["description"]
        assert embed["description"].endswith("x last line\n```")
        assert len(embed["description"]) < ERROR_TAIL_CHARS + 100

    def test_unknown_status_falls_back_to_red(self):
        result = RunResult("weird", 1, 0)

        embed = run_finished_embed("p", result, TaskStats(), 0.0)

        assert embed["title"] == "weird"
        assert embed["color"] == RED
