"""cadence tick — run one sweep from the command line (cron-friendly)."""

import asyncio

import typer
from rich.console import Console

console = Console()


def run_tick():
    """Fire due date-based triggers and resume waiting runs whose time has come.

    Runs created or resumed are executed inline before the command returns.

    Example (crontab):
        * * * * * cadence tick
    """
    from cadence.cli.context import open_engine

    async def _run():
        async with open_engine() as engine:
            return await engine.tick()

    try:
        report = asyncio.run(_run())
    except Exception as exc:
        console.print(f"[red]Error:[/red] {exc}")
        console.print("[dim]Is the database running? Check CADENCE_DATABASE_URL.[/dim]")
        raise typer.Exit(1)

    console.print(
        f"[green]✓ Tick[/green] {report.ran_at.isoformat()}  "
        f"sweep events: {report.events_emitted}  "
        f"runs created: {len(report.runs_created)}  "
        f"recovered: {len(report.runs_recovered)}  "
        f"resumed: {len(report.runs_resumed)}"
    )
