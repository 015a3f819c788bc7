"""cadence audit — View or export the audit log."""

import asyncio
import json
from datetime import datetime, timezone
from typing import Optional

import typer
from rich import box
from rich.console import Console
from rich.table import Table

console = Console()

_TYPE_COLOR = {
    "trigger_matched": "blue",
    "run_created": "cyan",
    "step_executed": "white",
    "run_waiting": "yellow",
    "run_resumed": "yellow",
    "run_completed": "green",
    "run_failed": "red",
    "run_cancelled": "magenta",
    "invariant_violation": "bold red",
}


def _summary(details: dict) -> str:
    keys = ("outcome", "action_type", "error", "resume_at", "category", "entity_id", "step_count")
    parts = [f"{k}={details[k]}" for k in keys if details.get(k) not in (None, "")]
    if details.get("discarded"):
        parts.append("discarded")
    return "  ".join(parts)


def audit_log(
    workflow_id: Optional[str] = typer.Option(None, "--workflow", "-w", help="Filter by workflow ID"),
    run_id: Optional[str] = typer.Option(None, "--run", "-r", help="Filter by run ID"),
    entry_type: Optional[list[str]] = typer.Option(None, "--type", "-t", help="Filter by entry type (repeatable)"),
    limit: int = typer.Option(100, "--limit", "-n", help="Max entries to show"),
    export: str = typer.Option(None, "--export", "-e", help="Export to file path (JSON)"),
    fmt: str = typer.Option("table", "--format", "-f", help="Output format: table or json"),
):
    """View or export the audit log — every match, step and run transition.

    Examples:
        cadence audit
        cadence audit --run 3f2c…
        cadence audit --type run_failed --type invariant_violation
        cadence audit --export report.json
    """
    from cadence.cli.context import open_engine
    from cadence.types import AuditEntryType, AuditQuery

    try:
        types = [AuditEntryType(t) for t in entry_type] if entry_type else None
    except ValueError:
        console.print(
            f"[red]Unknown entry type.[/red] Use one of: {', '.join(t.value for t in AuditEntryType)}"
        )
        raise typer.Exit(1)

    async def _run():
        async with open_engine() as engine:
            return await engine.query_audit(AuditQuery(
                workflow_id=workflow_id, run_id=run_id, entry_types=types, limit=limit,
            ))

    try:
        entries = asyncio.run(_run())
    except Exception as exc:
        console.print(f"[red]Error:[/red] {exc}")
        console.print("[dim]Is the database running? Check CADENCE_DATABASE_URL.[/dim]")
        raise typer.Exit(1)

    if fmt == "json" or export:
        payload = {
            "exported_at": datetime.now(timezone.utc).isoformat(),
            "total": len(entries),
            "entries": [e.model_dump(mode="json") for e in entries],
        }
        json_str = json.dumps(payload, indent=2)
        if export:
            with open(export, "w") as f:
                f.write(json_str)
            console.print(f"[green]Exported {len(entries)} entr(ies) to[/green] {export}")
        else:
            console.print_json(json_str)
        return

    if not entries:
        console.print("[yellow]No audit entries found.[/yellow]")
        return

    table = Table(box=box.ROUNDED, header_style="bold dim", title="[bold blue]CADENCE Audit Log[/bold blue]")
    table.add_column("Timestamp", width=20)
    table.add_column("Type", width=20)
    table.add_column("Run", width=14)
    table.add_column("Step", width=5, justify="right")
    table.add_column("Details", width=60)
    for e in entries:
        color = _TYPE_COLOR.get(e.entry_type.value, "white")
        table.add_row(
            f"[dim]{e.created_at.strftime('%Y-%m-%d %H:%M:%S')}[/dim]",
            f"[{color}]{e.entry_type.value}[/{color}]",
            f"[dim]{(e.run_id or '')[:12]}[/dim]",
            "" if e.step_index is None else str(e.step_index),
            _summary(e.details),
        )
    console.print(table)
    console.print(f"[dim]Showing {len(entries)} entr(ies). Use --limit N to see more.[/dim]")
