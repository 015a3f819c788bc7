"""Event ingestion and tick API routes."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import ValidationError

from cadence.api.schemas import EventAccepted, EventRequest, TickRequest
from cadence.types import Event

logger = logging.getLogger(__name__)
router = APIRouter(tags=["events"])


# ── Dependencies ──────────────────────────────────────────────────────────────

def _get_bus(request: Request):
    bus = getattr(request.app.state, "event_bus", None)
    if bus is None:
        raise HTTPException(status_code=503, detail="EventBus not initialised.")
    return bus


def _get_engine(request: Request):
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Engine not initialised.")
    return engine


# ── Routes ────────────────────────────────────────────────────────────────────

@router.post("/events", status_code=202, response_model=EventAccepted)
async def publish_event(body: EventRequest, bus=Depends(_get_bus)):
    """Publish a domain event.  Matching workflows start runs asynchronously."""
    data = body.model_dump(exclude_none=True)
    try:
        event = Event.model_validate(data)
    except ValidationError as exc:
        raise HTTPException(
            status_code=422,
            detail=[f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in exc.errors()],
        )
    expected = bus.subscriber_count(event.category)
    handlers = await bus.publish(event)
    if handlers < expected:
        # resending with the same id is safe: claimed workflows are skipped
        logger.error("[events] %s delivered to %d of %d handler(s)", event.id, handlers, expected)
        raise HTTPException(
            status_code=503,
            detail={
                "error": "Event was not fully processed; retry with the same id.",
                "event_id": event.id,
                "handlers": handlers,
                "expected": expected,
            },
        )
    logger.info("[events] %s %s:%s published to %d handler(s)",
                event.category.value, event.entity_type, event.entity_id, handlers)
    return EventAccepted(event_id=event.id, handlers=handlers)


@router.post("/tick")
async def run_tick(body: TickRequest = None, engine=Depends(_get_engine)):
    """Run one sweep: date-based triggers, stale running runs and due waiting runs."""
    now = body.now if body is not None else None
    report = await engine.tick(now)
    return report.model_dump(mode="json")
