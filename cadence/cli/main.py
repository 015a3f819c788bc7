"""CADENCE CLI — Typer application."""

import logging

import typer
from rich.console import Console

from cadence.version import __version__

app = typer.Typer(
    name="cadence",
    help="CADENCE — workflow automation engine for prospect and account follow-up.",
    no_args_is_help=True,
    invoke_without_command=True,
)
console = Console()


@app.callback()
def main(
    ctx: typer.Context,
    version: bool = typer.Option(False, "--version", "-v", is_eager=True, help="Show version"),
):
    """CADENCE CLI."""
    if version:
        console.print(f"CADENCE v{__version__}")
        raise typer.Exit()
    from cadence.config import config
    logging.basicConfig(level=config.log_level.upper())
    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


# ── Workflows ──────────────────────────────────────────────────────────────────
from cadence.cli.commands import workflows  # noqa: E402

workflows_app = typer.Typer(name="workflows", help="Manage workflow definitions.")
workflows_app.command("list", help="List workflow definitions")(workflows.workflows_list)
workflows_app.command("show", help="Print one workflow as JSON")(workflows.workflows_show)
workflows_app.command("create", help="Store a workflow from a JSON file")(workflows.workflows_create)
workflows_app.command("validate", help="Check a workflow JSON file without storing it")(workflows.workflows_validate)
workflows_app.command("delete", help="Delete a workflow definition")(workflows.workflows_delete)
app.add_typer(workflows_app)

# ── Runs ───────────────────────────────────────────────────────────────────────
from cadence.cli.commands import runs, tick, audit  # noqa: E402

app.command(name="runs", help="List runs or show one run in detail")(runs.runs_list)
app.command(name="cancel", help="Cancel a running or waiting run")(runs.cancel_run)
app.command(name="tick", help="Fire due date triggers and resume waiting runs")(tick.run_tick)
app.command(name="audit", help="View or export the audit log")(audit.audit_log)

# ── Operations ─────────────────────────────────────────────────────────────────
from cadence.cli.commands import config, dev  # noqa: E402

app.command(name="config", help="Show resolved configuration")(config.config_show)
app.command(name="dev", help="Start the API server in development mode")(dev.dev_server)


if __name__ == "__main__":
    app()
