"""GET /audit — query the append-only audit log."""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from cadence.types import AuditEntryType, AuditQuery

router = APIRouter(tags=["audit"])


def _get_audit(request: Request):
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Engine not initialised.")
    return engine.audit


@router.get("/audit")
async def query_audit(
    workflow_id: Optional[str] = None,
    run_id: Optional[str] = None,
    event_id: Optional[str] = None,
    entry_type: Optional[list[str]] = Query(default=None),
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    audit=Depends(_get_audit),
):
    """Audit entries matching the filters, oldest first."""
    try:
        entry_types = [AuditEntryType(t) for t in entry_type] if entry_type else None
    except ValueError:
        raise HTTPException(
            status_code=422,
            detail=f"Invalid entry_type. Must be one of: {[t.value for t in AuditEntryType]}",
        )
    entries = await audit.query(AuditQuery(
        workflow_id=workflow_id,
        run_id=run_id,
        event_id=event_id,
        entry_types=entry_types,
        since=since,
        until=until,
        limit=limit,
        offset=offset,
    ))
    return {"entries": [e.model_dump(mode="json") for e in entries]}
