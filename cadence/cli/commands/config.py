"""cadence config — Show resolved CADENCE configuration."""

from rich import box
from rich.console import Console
from rich.table import Table

console = Console()

_SECRETS = {"service_api_key"}

_SECTIONS = [
    ("App", ["debug", "log_level"]),
    ("Storage & Queue", ["database_url", "redis_url", "queue_backend", "worker_concurrency",
                         "tick_interval_seconds"]),
    ("Runs", ["max_steps_per_run", "max_cas_retries", "run_lease_seconds"]),
    ("Retry Policy", ["retry_max_attempts", "retry_base_delay_seconds",
                      "retry_backoff_factor", "retry_jitter"]),
    ("Services", ["service_timeout_seconds", "task_service_url", "email_service_url",
                  "entity_service_url", "interaction_service_url", "service_api_key"]),
    ("Server", ["host", "port", "cors_origins"]),
]


def _mask(secret: str) -> str:
    # short secrets are hidden entirely
    return "***" if len(secret) <= 8 else f"{secret[:4]}…***"


def _display(attr: str, value) -> str:
    if value is None:
        return "[dim](not set)[/dim]"
    if attr in _SECRETS:
        return _mask(str(value))
    return str(value)


def config_show():
    """Show the resolved CADENCE configuration.

    Values come from CADENCE_* environment variables and the .env file;
    the service API key is masked.

    Example:
        cadence config
    """
    from cadence.config import CadenceConfig
    cfg = CadenceConfig()

    table = Table(box=box.ROUNDED, header_style="bold dim", title="[bold]CADENCE Configuration[/bold]")
    table.add_column("Setting", style="cyan", width=28)
    table.add_column("Value", width=50)
    table.add_column("Env Var", style="dim", width=36)

    for n, (title, attrs) in enumerate(_SECTIONS):
        if n:
            table.add_section()
        table.add_row(f"[bold dim]{title}[/bold dim]", "", "")
        for attr in attrs:
            table.add_row(f"  {attr}", _display(attr, getattr(cfg, attr, None)), f"CADENCE_{attr.upper()}")

    table.add_section()
    table.add_row("[bold dim]Mutable Fields[/bold dim]", "", "")
    for entity_type, fields in cfg.mutable_fields.items():
        table.add_row(f"  {entity_type}", ", ".join(fields), "CADENCE_MUTABLE_FIELDS")

    console.print(table)
    console.print("[dim]Source: environment variables + .env file (prefix: CADENCE_)[/dim]")
