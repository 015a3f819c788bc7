"""cadence runs / cancel — inspect and cancel workflow runs."""

import asyncio
import json
from typing import Optional

import typer
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from cadence.exceptions import RunNotFound, RunStateError
from cadence.types import RunStatus

console = Console()

_STATUS_COLOR = {
    "pending": "dim",
    "running": "cyan",
    "waiting": "yellow",
    "completed": "green",
    "failed": "red",
    "cancelled": "magenta",
}


def _show_run(run) -> None:
    color = _STATUS_COLOR.get(run.status.value, "white")
    resume = (
        f"\n[bold]Resumes:[/bold] {run.scheduled_resume_at.isoformat()}"
        if run.scheduled_resume_at else ""
    )
    console.print(Panel(
        f"[bold]Workflow:[/bold] {run.workflow_name or run.workflow_id}\n"
        f"[bold]Subject:[/bold] {run.subject_entity_type}:{run.subject_entity_id}\n"
        f"[bold]Status:[/bold] [{color}]{run.status.value}[/{color}]  "
        f"[dim]step {run.cursor}/{len(run.steps_snapshot)}, version {run.version}[/dim]"
        f"{resume}"
        + (f"\n[red]{run.error}[/red]" if run.error else ""),
        title=f"[bold blue]Run {run.id}[/bold blue]",
        border_style="blue",
    ))
    table = Table(box=box.ROUNDED, header_style="bold dim")
    table.add_column("#", width=4, justify="right", style="dim")
    table.add_column("Action", width=20, style="cyan")
    table.add_column("Outcome", width=18)
    table.add_column("Attempts", width=8, justify="right")
    table.add_column("Error", width=40)
    for r in run.step_results:
        ok = r.outcome.value in ("success", "suspend")
        table.add_row(
            str(r.step_index),
            r.action_type,
            f"[{'green' if ok else 'red'}]{r.outcome.value}[/]",
            str(r.attempt_count),
            r.error or "",
        )
    console.print(table)


def runs_list(
    run_id: Optional[str] = typer.Option(None, "--run", "-r", help="Show one run in detail"),
    workflow_id: Optional[str] = typer.Option(None, "--workflow", "-w", help="Filter by workflow ID"),
    status: Optional[list[str]] = typer.Option(None, "--status", "-s", help="Filter by status (repeatable)"),
    limit: int = typer.Option(50, "--limit", "-n", help="Max runs to show"),
    fmt: str = typer.Option("table", "--format", "-f", help="Output format: table or json"),
):
    """List workflow runs, newest first, or show one run with --run."""
    from cadence.cli.context import open_engine

    try:
        statuses = [RunStatus(s) for s in status] if status else None
    except ValueError:
        console.print(f"[red]Unknown status.[/red] Use one of: {', '.join(s.value for s in RunStatus)}")
        raise typer.Exit(1)

    async def _run():
        async with open_engine() as engine:
            if run_id:
                return [await engine.get_run(run_id)]
            return await engine.list_runs(workflow_id=workflow_id, status_filter=statuses, limit=limit)

    try:
        runs = asyncio.run(_run())
    except RunNotFound as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1)

    if fmt == "json":
        console.print_json(json.dumps([r.model_dump(mode="json") for r in runs]))
        return
    if run_id:
        _show_run(runs[0])
        return
    if not runs:
        console.print("[yellow]No runs found.[/yellow]")
        return

    table = Table(box=box.ROUNDED, header_style="bold dim", title="[bold]Runs[/bold]")
    table.add_column("Run", width=14)
    table.add_column("Workflow", width=24)
    table.add_column("Subject", width=22)
    table.add_column("Status", width=10)
    table.add_column("Step", width=6, justify="right")
    table.add_column("Created", width=20)
    for r in runs:
        color = _STATUS_COLOR.get(r.status.value, "white")
        table.add_row(
            f"[dim]{r.id[:12]}…[/dim]",
            r.workflow_name or r.workflow_id,
            f"{r.subject_entity_type}:{r.subject_entity_id}",
            f"[{color}]{r.status.value}[/{color}]",
            f"{r.cursor}/{len(r.steps_snapshot)}",
            f"[dim]{r.created_at.strftime('%Y-%m-%d %H:%M:%S')}[/dim]",
        )
    console.print(table)


def cancel_run(
    run_id: str = typer.Argument(..., help="Run ID"),
    reason: str = typer.Option("", "--reason", help="Recorded on the run"),
):
    """Cancel a running or waiting run."""
    from cadence.cli.context import open_engine

    async def _run():
        async with open_engine() as engine:
            return await engine.cancel(run_id, reason=reason)

    try:
        run = asyncio.run(_run())
    except (RunNotFound, RunStateError) as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1)
    console.print(f"[green]✓ Cancelled[/green] {run.id}")
