"""Workflow run API routes: listing, detail, history and cancellation."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from cadence.api.schemas import CancelRequest
from cadence.exceptions import RunNotFound, RunStateError
from cadence.types import RunStatus

logger = logging.getLogger(__name__)
router = APIRouter(tags=["runs"])


def _get_engine(request: Request):
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Engine not initialised.")
    return engine


@router.get("/runs")
async def list_runs(
    workflow_id: Optional[str] = None,
    status: Optional[list[str]] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    engine=Depends(_get_engine),
):
    """List runs, newest first.  ``status`` may be repeated."""
    statuses = None
    if status:
        try:
            statuses = [RunStatus(s) for s in status]
        except ValueError:
            raise HTTPException(
                status_code=422,
                detail=f"Invalid status in {status!r}. "
                       f"Must be one of: {[s.value for s in RunStatus]}",
            )
    runs = await engine.list_runs(
        workflow_id=workflow_id, status_filter=statuses, limit=limit, offset=offset
    )
    return {"runs": [r.model_dump(mode="json") for r in runs]}


@router.get("/runs/{run_id}")
async def get_run(run_id: str, engine=Depends(_get_engine)):
    try:
        run = await engine.get_run(run_id)
    except RunNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return run.model_dump(mode="json")


@router.get("/runs/{run_id}/history")
async def run_history(run_id: str, engine=Depends(_get_engine)):
    """Audit trail for one run, oldest first."""
    try:
        await engine.get_run(run_id)
    except RunNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    entries = await engine.audit.run_history(run_id)
    return {"entries": [e.model_dump(mode="json") for e in entries]}


@router.post("/runs/{run_id}/cancel")
async def cancel_run(run_id: str, body: CancelRequest = None, engine=Depends(_get_engine)):
    """Cancel a pending, running or waiting run."""
    reason = body.reason if body is not None else ""
    try:
        run = await engine.cancel(run_id, reason=reason)
    except RunNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except RunStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return run.model_dump(mode="json")
