"""GET /health — Health check with real service probes."""

import logging
from fastapi import APIRouter, Request
from cadence.api.schemas import HealthResponse
from cadence.config import config
from cadence.version import __version__

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    """Check health of the database, the run queue and the engine."""
    services: dict[str, bool] = {"api": True, "database": False, "engine": False, "queue": False}

    # Database
    try:
        async_session = request.app.state.async_session
        async with async_session() as session:
            from sqlalchemy import text
            await session.execute(text("SELECT 1"))
        services["database"] = True
    except Exception as exc:
        logger.warning(f"[health] DB check failed: {exc}")

    engine = getattr(request.app.state, "engine", None)
    services["engine"] = engine is not None

    # Queue: arq pool reachable, or local workers running
    arq_pool = getattr(request.app.state, "arq_pool", None)
    if arq_pool is not None:
        try:
            await arq_pool.ping()
            services["queue"] = True
        except Exception as exc:
            logger.warning(f"[health] Redis check failed: {exc}")
    elif engine is not None:
        services["queue"] = engine.scheduler.running

    overall = "ok" if all(services.values()) else "degraded"
    return HealthResponse(
        status=overall,
        version=__version__,
        services=services,
        queue_backend=config.queue_backend,
    )
