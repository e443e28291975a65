"""Tests for manual agent runs and clean."""

from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from gateloop.config import LoopConfig
from gateloop.errors import LockConflictError
from gateloop.models import AgentSucceeded
from gateloop.runner import (
    clean_run_files,
    plan_prompt,
    refactor_prompt,
    run_phase_once,
)


class TestPrompts:
    """Tests for the manual phase prompts."""

    def test_plan_prompt_only(self) -> None:
        assert plan_prompt("Design the cache", []) == "Design the cache"

    def test_plan_inputs_only(self, tmp_path: Path) -> None:
        spec = tmp_path / "spec.md"

        prompt = plan_prompt(None, [spec])

        assert prompt.splitlines() == [
            "Please read and analyze the following input files for context:",
            f"- {spec.resolve()}",
        ]

    def test_plan_needs_something(self) -> None:
        with pytest.raises(ValueError):
            plan_prompt("", [])

    def test_refactor_without_scope(self) -> None:
        assert refactor_prompt() == (
            "Analyze the codebase and generate refactoring recommendations."
        )


class TestRunPhaseOnce:
    """Tests for run_phase_once()."""

    @pytest.mark.asyncio
    async def test_runs_agent_for_phase(self, tmp_path: Path) -> None:
        config = LoopConfig()
        with patch(
            "gateloop.runner.run_agent",
            new_callable=AsyncMock,
            return_value=AgentSucceeded(),
        ) as agent:
            result = await run_phase_once(config, "task", "make tasks", cwd=tmp_path)

        assert result.is_success is True
        args, kwargs = agent.call_args
        assert args[:3] == (config.agent, "task", "Task Agent")
        assert kwargs == {"prompt": "make tasks", "cwd": tmp_path}

    @pytest.mark.asyncio
    async def test_loop_phase_rejected(self, tmp_path: Path) -> None:
        with patch("gateloop.runner.run_agent", new_callable=AsyncMock) as agent:
            with pytest.raises(ValueError, match="Not a manual phase"):
                await run_phase_once(LoopConfig(), "impl", "go", cwd=tmp_path)

        agent.assert_not_awaited()


class TestCleanRunFiles:
    """Tests for clean_run_files()."""

    def test_empty_project(self, tmp_path: Path) -> None:
        assert clean_run_files(LoopConfig(), tmp_path) == []

    def test_unreadable_pid_counts_as_held(self, tmp_path: Path) -> None:
        """A lock whose owner cannot be determined is left alone."""
        lock_path = tmp_path / ".gateloop-lock"
        lock_path.write_text("garbage\n")

        with pytest.raises(LockConflictError):
            clean_run_files(LoopConfig(), tmp_path)

        assert lock_path.exists()

    def test_removes_only_run_logs(self, tmp_path: Path) -> None:
        logs = tmp_path / ".gateloop-logs"
        logs.mkdir()
        old = logs / "gateloop-run-20260102-080000.log"
        older = logs / "gateloop-run-20260101-080000.log"
        old.write_text("a")
        older.write_text("b")
        (logs / "keep.log").write_text("c")

        removed = clean_run_files(LoopConfig(), tmp_path)

        assert removed == [older, old]
        assert [p.name for p in logs.iterdir()] == ["keep.log"]
