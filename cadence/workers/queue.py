"""ARQ task functions and WorkerSettings for CADENCE background workers.

In ``queue_backend="arq"`` mode the API only creates runs; every step
executes here.  ``advance_run_task`` runs one step and, through the
scheduler's enqueue hook, schedules the next job for the same run.
``tick_task`` is the cron-driven sweep.
"""

from __future__ import annotations

import logging
from typing import Any

from arq import cron
from arq.connections import RedisSettings

from cadence.config import config as _config

logger = logging.getLogger(__name__)


# ── Task functions ────────────────────────────────────────────────────────────

async def advance_run_task(ctx: dict, run_id: str) -> dict:
    """Execute the next step of *run_id*.

    Errors from the store propagate so arq retries the job; step-level
    failures never raise, they are recorded on the run.
    """
    engine = ctx["engine"]
    try:
        run = await engine.scheduler.process(run_id)
    except Exception:
        logger.exception("advance_run_task failed for run=%s", run_id)
        raise
    if run is None:
        return {"run_id": run_id, "status": None}
    return {"run_id": run.id, "status": run.status.value, "cursor": run.cursor}


async def tick_task(ctx: dict) -> dict[str, Any]:
    """Date sweep plus resumption of due waiting runs."""
    engine = ctx["engine"]
    report = await engine.tick()
    return report.model_dump(mode="json")


# ── Worker lifecycle ──────────────────────────────────────────────────────────

async def startup(ctx: dict) -> None:
    """Initialize all CADENCE components for the worker process."""
    import httpx

    from cadence.callbacks import LoggingCallback
    from cadence.core.engine import AutomationEngine
    from cadence.db.database import init_db, async_session
    from cadence.db.repository import SessionRepository
    from cadence.services.http import build_http_collaborators

    logger.info("CADENCE worker starting up...")
    await init_db()

    redis = ctx["redis"]

    async def enqueue(run_id: str) -> None:
        await redis.enqueue_job("advance_run_task", run_id)

    http_client = httpx.AsyncClient(timeout=_config.service_timeout_seconds)
    engine = AutomationEngine.build(
        build_http_collaborators(_config, client=http_client),
        config=_config,
        # fresh session per call; the worker process is long-lived
        repository=SessionRepository(async_session),
        callbacks=[LoggingCallback()],
        enqueue=enqueue,
    )

    # Store in ctx for task functions
    ctx["engine"] = engine
    ctx["_http_client"] = http_client
    logger.info("CADENCE worker startup complete")


async def shutdown(ctx: dict) -> None:
    """Clean up worker resources."""
    logger.info("CADENCE worker shutting down...")
    http_client = ctx.get("_http_client")
    if http_client is not None:
        await http_client.aclose()


def tick_schedule(interval_seconds: int) -> dict[str, set[int]]:
    """arq cron fields approximating a tick every *interval_seconds*."""
    interval = max(1, int(interval_seconds))
    if interval < 60:
        return {"second": set(range(0, 60, interval))}
    minutes = max(1, interval // 60)
    if minutes < 60:
        return {"minute": set(range(0, 60, minutes)), "second": {0}}
    return {"minute": {0}, "second": {0}}


# ── WorkerSettings ────────────────────────────────────────────────────────────

class WorkerSettings:
    functions = [advance_run_task, tick_task]
    cron_jobs = [
        cron(tick_task, run_at_startup=True, **tick_schedule(_config.tick_interval_seconds)),
    ]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = RedisSettings.from_dsn(_config.redis_url)
    max_jobs = _config.worker_concurrency
    job_timeout = 600
    max_tries = 5
    keep_result = 3600
