"""cadence workflows — list, show, create, validate and delete workflow definitions."""

import asyncio
import json
from pathlib import Path

import typer
from rich import box
from rich.console import Console
from rich.table import Table

from cadence.exceptions import WorkflowNotFound, WorkflowValidationError

console = Console()


def _load(path: Path) -> dict:
    try:
        return json.loads(path.read_text())
    except (OSError, json.JSONDecodeError) as exc:
        console.print(f"[red]Cannot read {path}:[/red] {exc}")
        raise typer.Exit(1)


def _print_violations(exc: WorkflowValidationError) -> None:
    console.print(f"[red]✗ {exc}[/red]")
    for v in exc.violations:
        console.print(f"  [red]•[/red] {v}")


def workflows_list(
    active_only: bool = typer.Option(False, "--active", "-a", help="Only active workflows"),
    fmt: str = typer.Option("table", "--format", "-f", help="Output format: table or json"),
):
    """List workflow definitions."""
    from cadence.cli.context import open_engine

    async def _run():
        async with open_engine() as engine:
            return await engine.workflows.list(active_only=active_only)

    workflows = asyncio.run(_run())
    if fmt == "json":
        console.print_json(json.dumps([wf.model_dump(mode="json") for wf in workflows]))
        return
    if not workflows:
        console.print("[yellow]No workflows defined.[/yellow]")
        return

    table = Table(box=box.ROUNDED, header_style="bold dim", title="[bold]Workflows[/bold]")
    table.add_column("ID", width=14)
    table.add_column("Name", width=28)
    table.add_column("Trigger", width=18, style="cyan")
    table.add_column("Steps", justify="right", width=6)
    table.add_column("Runs", justify="right", width=6)
    table.add_column("Active", width=7)
    for wf in workflows:
        table.add_row(
            f"[dim]{wf.id[:12]}…[/dim]",
            wf.name,
            wf.trigger_type.value,
            str(len(wf.steps)),
            str(wf.execution_count),
            "[green]yes[/green]" if wf.active else "[dim]no[/dim]",
        )
    console.print(table)


def workflows_show(workflow_id: str = typer.Argument(..., help="Workflow ID")):
    """Print one workflow as JSON."""
    from cadence.cli.context import open_engine

    async def _run():
        async with open_engine() as engine:
            return await engine.workflows.get(workflow_id)

    try:
        workflow = asyncio.run(_run())
    except WorkflowNotFound as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1)
    console.print_json(workflow.model_dump_json())


def workflows_create(path: Path = typer.Argument(..., help="JSON file with the workflow definition")):
    """Validate and store a workflow from a JSON file."""
    from cadence.cli.context import open_engine
    from cadence.workflows.manager import parse_workflow

    data = _load(path)

    async def _run():
        async with open_engine() as engine:
            return await engine.workflows.save(parse_workflow(data))

    try:
        workflow = asyncio.run(_run())
    except WorkflowValidationError as exc:
        _print_violations(exc)
        raise typer.Exit(1)
    console.print(f"[green]✓ Saved workflow[/green] {workflow.name} [dim]({workflow.id})[/dim]")


def workflows_validate(path: Path = typer.Argument(..., help="JSON file with the workflow definition")):
    """Check a workflow definition without storing it.  No database needed."""
    from cadence.workflows.manager import WorkflowManager, parse_workflow

    data = _load(path)
    try:
        workflow = parse_workflow(data)
    except WorkflowValidationError as exc:
        _print_violations(exc)
        raise typer.Exit(1)

    issues = WorkflowManager().validate(workflow)
    errors = [i for i in issues if not i.startswith("WARNING:")]
    for issue in issues:
        color = "red" if issue in errors else "yellow"
        console.print(f"  [{color}]•[/{color}] {issue}")
    if errors:
        console.print(f"[red]✗ {len(errors)} error(s)[/red]")
        raise typer.Exit(1)
    console.print(f"[green]✓ {workflow.name} is valid[/green]")


def workflows_delete(workflow_id: str = typer.Argument(..., help="Workflow ID")):
    """Delete a workflow definition.  Its runs are kept."""
    from cadence.cli.context import open_engine

    async def _run():
        async with open_engine() as engine:
            await engine.workflows.delete(workflow_id)

    try:
        asyncio.run(_run())
    except WorkflowNotFound as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1)
    console.print(f"[green]✓ Deleted[/green] {workflow_id}")
