"""Engine wiring shared by the database-backed CLI commands."""

from contextlib import asynccontextmanager


@asynccontextmanager
async def open_engine():
    """Yield an AutomationEngine backed by the configured database and services.

    No worker pool is started: commands that create or resume runs drive them
    inline until they finish or park.
    """
    import httpx

    from cadence.config import config
    from cadence.core.engine import AutomationEngine
    from cadence.db.database import init_db, async_session
    from cadence.db.repository import SessionRepository
    from cadence.services.http import build_http_collaborators

    await init_db()
    async with httpx.AsyncClient(timeout=config.service_timeout_seconds) as client:
        yield AutomationEngine.build(
            build_http_collaborators(config, client=client),
            config=config,
            repository=SessionRepository(async_session),
        )
