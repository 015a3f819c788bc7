"""cadence dev — Start local development server."""

import typer
from rich.console import Console

console = Console()


def dev_server(
    host: str = typer.Option("0.0.0.0", help="Host to bind to"),
    port: int = typer.Option(8000, help="Port to listen on"),
    reload: bool = typer.Option(True, "--reload/--no-reload", help="Restart on code changes"),
):
    """Start the CADENCE API server (with in-process workers) in development mode."""
    import uvicorn
    console.print(f"[green]Starting CADENCE dev server on {host}:{port}[/green]")
    uvicorn.run("cadence.api.main:app", host=host, port=port, reload=reload)
