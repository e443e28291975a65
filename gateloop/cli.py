"""CLI for gateloop.

Provides the command-line interface for running the loop, inspecting
progress, running the verification gate by hand and starting the manual
plan, task and refactor agents.
"""

import asyncio
import json
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from gateloop import ledger
from gateloop.config import LoopConfig
from gateloop.errors import ConfigError, LockConflictError
from gateloop.gate import run_gate
from gateloop.lock import RunLock
from gateloop.logging_config import configure_logging
from gateloop.models import AgentRunResult, LockInfo, RunResult
from gateloop.orchestrator import RunOptions, run_loop
from gateloop.runner import (
    clean_run_files,
    plan_prompt,
    refactor_prompt,
    run_phase_once,
    task_prompt,
)
from gateloop.telemetry import create_metrics, setup_telemetry

console = Console()

RESULT_COLORS = {
    "done": "green",
    "dry_run": "green",
    "max_iterations": "yellow",
}


def _load_config() -> LoopConfig:
    try:
        return LoopConfig.from_env()
    except ConfigError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        sys.exit(1)


def _describe_lock(info: LockInfo) -> str:
    if not info.is_locked:
        return "unlocked"
    description = f"held by PID {info.pid}"
    if info.elapsed:
        description += f" for {info.elapsed}"
    if info.is_stale:
        description += " (process not running)"
    return description


@click.group()
@click.version_option(package_name="gateloop")
def cli() -> None:
    """Gateloop - Gate-verified agent loop."""
    pass


@cli.command()
@click.option(
    "--max-iterations",
    "-n",
    type=click.IntRange(min=1),
    default=None,
    help="Iteration cap (default: GATELOOP_MAX_ITERATIONS or 100)",
)
@click.option("--dry-run", is_flag=True, help="Show the planned action and exit")
@click.option("--force", is_flag=True, help="Take over a lock held by another run")
@click.option("--yes", "-y", is_flag=True, help="Override a held lock without asking")
@click.option("--verbose", "-v", is_flag=True, help="Show debug output")
def run(
    max_iterations: int | None, dry_run: bool, force: bool, yes: bool, verbose: bool
) -> None:
    """Run the loop until all tasks are done."""
    config = _load_config()
    configure_logging(verbose)

    if not dry_run and not force:
        info = RunLock(Path.cwd() / config.paths.lock).info()
        if info.is_locked:
            console.print(f"[yellow]Another run holds the lock:[/yellow] {_describe_lock(info)}")
            if not (yes or click.confirm("Override the existing lock?", default=False)):
                console.print("Aborted.")
                sys.exit(1)
            force = True

    options = RunOptions(max_iterations=max_iterations, dry_run=dry_run, force=force)
    result = asyncio.run(_run(config, options))
    _print_run_summary(result)
    sys.exit(result.exit_code)


async def _run(config: LoopConfig, options: RunOptions) -> RunResult:
    """Internal async implementation of a loop run."""
    tracer, meter = setup_telemetry(config)
    metrics = create_metrics(meter)
    return await run_loop(config, options, tracer=tracer, metrics=metrics)


def _print_run_summary(result: RunResult) -> None:
    color = RESULT_COLORS.get(result.status, "red")
    console.print(f"\n[bold {color}]{result.status.upper()}[/bold {color}]")
    console.print(f"  Iterations: {result.iterations}")
    if result.final_state is not None:
        console.print(f"  Final state: {result.final_state.value}")
    console.print(f"  Exit code: {result.exit_code}")
    if result.error:
        console.print(f"  [red]Error:[/red] {result.error}")


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def status(as_json: bool) -> None:
    """Show orchestration state, task counts and lock holder."""
    config = _load_config()
    cwd = Path.cwd()
    progress_path = cwd / config.paths.progress

    state = ledger.classify(progress_path, force_refresh=True)
    stats = ledger.statistics(progress_path)
    task = ledger.current_task(progress_path)
    info = RunLock(cwd / config.paths.lock).info()

    if as_json:
        report = {
            "state": state.value,
            "tasks": {
                "total": stats.total,
                "completed": stats.completed,
                "remaining": stats.remaining,
                "in_review": stats.in_review,
                "blocked": stats.blocked,
            },
            "current_task": {"id": task.id, "title": task.title} if task else None,
            "lock": {
                "locked": info.is_locked,
                "pid": info.pid,
                "elapsed": info.elapsed,
                "stale": info.is_stale,
                "metadata": info.metadata,
            },
        }
        click.echo(json.dumps(report, indent=2))
        return

    table = Table(title="Gateloop Status")
    table.add_column("Field")
    table.add_column("Value")
    table.add_row("State", state.value)
    table.add_row("Tasks", f"{stats.completed}/{stats.total} complete")
    table.add_row("Remaining", str(stats.remaining))
    table.add_row("In review", str(stats.in_review))
    table.add_row("Blocked", str(stats.blocked))
    table.add_row("Current task", f"{task.id} - {task.title}" if task else "-")
    table.add_row("Lock", _describe_lock(info))
    for key, value in info.metadata.items():
        table.add_row(f"  {key}", value)
    console.print(table)


@cli.command()
@click.option("--parallel", is_flag=True, help="Run gate commands concurrently")
@click.option("--verbose", "-v", is_flag=True, help="Show debug output")
def gate(parallel: bool, verbose: bool) -> None:
    """Run the configured gate commands once."""
    config = _load_config()
    configure_logging(verbose)

    if not config.gate.commands:
        console.print("[yellow]No gate commands configured (GATELOOP_GATE_COMMANDS)[/yellow]")
        return

    result = asyncio.run(
        run_gate(
            config.gate.commands,
            strategy="parallel" if parallel else config.gate.strategy,
            timeout_seconds=config.gate.timeout_seconds,
            cwd=Path.cwd(),
        )
    )

    table = Table(title="Gate Results")
    table.add_column("Command")
    table.add_column("Exit", justify="right")
    table.add_column("Duration", justify="right")
    for r in result.results:
        color = "green" if r.is_success else "red"
        table.add_row(
            r.command,
            f"[{color}]{r.exit_code}[/{color}]",
            f"{r.duration_seconds:.1f}s",
        )
    console.print(table)

    if result.is_success:
        console.print("[bold green]Gate passed[/bold green]")
        sys.exit(0)
    console.print(f"[bold red]Gate failed:[/bold red] {result.error}")
    sys.exit(1)


def _run_phase(config: LoopConfig, phase: str, prompt: str) -> None:
    result: AgentRunResult = asyncio.run(
        run_phase_once(config, phase, prompt, cwd=Path.cwd())
    )
    if result.is_success:
        console.print(f"[bold green]{phase.capitalize()} agent finished[/bold green]")
    else:
        console.print(f"[bold red]{phase.capitalize()} agent failed:[/bold red] {result.error}")
    sys.exit(result.exit_code)


@cli.command()
@click.option("--prompt", "-p", default=None, help="Instruction for the plan agent")
@click.option(
    "--input",
    "-i",
    "inputs",
    multiple=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="File to read for context (repeatable)",
)
@click.option("--verbose", "-v", is_flag=True, help="Show debug output")
def plan(prompt: str | None, inputs: tuple[Path, ...], verbose: bool) -> None:
    """Run the plan agent once."""
    if not prompt and not inputs:
        raise click.UsageError("Provide --prompt, --input, or both")
    config = _load_config()
    configure_logging(verbose)
    _run_phase(config, "plan", plan_prompt(prompt, inputs))


@cli.command()
@click.option(
    "--plan",
    "plan_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Plan file to break into tasks",
)
@click.option("--verbose", "-v", is_flag=True, help="Show debug output")
def task(plan_path: Path, verbose: bool) -> None:
    """Run the task agent once to turn a plan into tasks."""
    config = _load_config()
    configure_logging(verbose)
    _run_phase(config, "task", task_prompt(plan_path))


@cli.command()
@click.option("--scope", default=None, help="Limit the analysis to a path or area")
@click.option("--verbose", "-v", is_flag=True, help="Show debug output")
def refactor(scope: str | None, verbose: bool) -> None:
    """Run the refactor agent once."""
    config = _load_config()
    configure_logging(verbose)
    _run_phase(config, "refactor", refactor_prompt(scope))


@cli.command()
@click.option("--verbose", "-v", is_flag=True, help="Show debug output")
def clean(verbose: bool) -> None:
    """Remove run logs and a lock left by a dead run."""
    config = _load_config()
    configure_logging(verbose)

    try:
        removed = clean_run_files(config, Path.cwd())
    except LockConflictError as e:
        console.print(f"[red]Cannot clean while a run is active:[/red] {e}")
        sys.exit(1)

    if not removed:
        console.print("Nothing to clean.")
        return
    for path in removed:
        console.print(f"  removed {path}")
    console.print(f"[green]Cleaned {len(removed)} file(s).[/green]")


def main() -> None:
    """Main entry point for the gateloop CLI."""
    cli()


if __name__ == "__main__":
    main()
