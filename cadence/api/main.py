"""FastAPI application factory with lifespan management."""

import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from cadence.config import config
from cadence.version import __version__

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown."""
    # ── Startup ──
    logger.info(f"CADENCE v{__version__} starting...")

    # 1. Database
    from cadence.db.database import init_db, async_session
    from cadence.db.repository import SessionRepository
    await init_db()
    app.state.async_session = async_session
    repository = SessionRepository(async_session)

    # 2. External collaborators (one pooled HTTP client for all four)
    from cadence.services.http import build_http_collaborators
    http_client = httpx.AsyncClient(timeout=config.service_timeout_seconds)
    collaborators = build_http_collaborators(config, client=http_client)

    # 3. Run queue: arq (distributed workers) or local asyncio workers
    app.state.arq_pool = None
    enqueue = None
    if config.queue_backend == "arq":
        from arq import create_pool
        from arq.connections import RedisSettings

        arq_pool = await create_pool(RedisSettings.from_dsn(config.redis_url))
        app.state.arq_pool = arq_pool

        async def enqueue(run_id: str) -> None:
            await arq_pool.enqueue_job("advance_run_task", run_id)

        logger.info("ARQ pool connected — runs execute on background workers")

    # 4. Engine + event bus
    from cadence.callbacks import LoggingCallback
    from cadence.core.engine import AutomationEngine
    from cadence.triggers import EventBus

    engine = AutomationEngine.build(
        collaborators,
        config=config,
        repository=repository,
        callbacks=[LoggingCallback()],
        enqueue=enqueue,
    )
    event_bus = EventBus()
    engine.attach(event_bus)
    app.state.engine = engine
    app.state.event_bus = event_bus

    # Local mode runs steps and the periodic tick in this process;
    # with arq both belong to the worker.
    if app.state.arq_pool is None:
        await engine.start(config.worker_concurrency)

    logger.info(f"CADENCE v{__version__} ready ({config.queue_backend} queue)")

    yield

    # ── Shutdown ──
    logger.info("CADENCE shutting down...")
    await engine.stop()
    if app.state.arq_pool is not None:
        await app.state.arq_pool.close()
    await http_client.aclose()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="CADENCE",
        description="Workflow automation engine — triggers, runs and audited step execution.",
        version=__version__,
        lifespan=lifespan,
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["*"],
    )

    # Routes
    from cadence.api.routes import audit, events, health, runs, workflows
    app.include_router(events.router)
    app.include_router(workflows.router)
    app.include_router(runs.router)
    app.include_router(audit.router)
    app.include_router(health.router)

    return app


app = create_app()
