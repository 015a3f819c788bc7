"""Workflow definition API routes."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request

from cadence.api.schemas import WorkflowRequest, WorkflowUpdateRequest
from cadence.exceptions import WorkflowNotFound, WorkflowValidationError
from cadence.types import TriggerType

logger = logging.getLogger(__name__)
router = APIRouter(tags=["workflows"])


# ── Dependencies ──────────────────────────────────────────────────────────────

def _get_manager(request: Request):
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Engine not initialised.")
    return engine.workflows


def _invalid(exc: WorkflowValidationError) -> HTTPException:
    return HTTPException(
        status_code=422,
        detail={"message": str(exc), "violations": exc.violations},
    )


def _not_found(exc: WorkflowNotFound) -> HTTPException:
    return HTTPException(status_code=404, detail=str(exc))


# ── Routes ────────────────────────────────────────────────────────────────────

@router.get("/workflows")
async def list_workflows(
    active_only: bool = False,
    trigger_type: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
    manager=Depends(_get_manager),
):
    """List workflow definitions, newest first."""
    if trigger_type is not None:
        try:
            trigger_type = TriggerType(trigger_type)
        except ValueError:
            raise HTTPException(
                status_code=422,
                detail=f"Invalid trigger type: {trigger_type!r}. "
                       f"Must be one of: {[t.value for t in TriggerType]}",
            )
    workflows = await manager.list(
        active_only=active_only, trigger_type=trigger_type, limit=limit, offset=offset
    )
    return {"workflows": [wf.model_dump(mode="json") for wf in workflows]}


@router.post("/workflows", status_code=201)
async def create_workflow(body: WorkflowRequest, manager=Depends(_get_manager)):
    """Validate and store a new workflow."""
    try:
        workflow = await manager.create(
            name=body.name,
            trigger_type=body.trigger_type,
            trigger_config=body.trigger_config,
            steps=body.steps,
            description=body.description,
            active=body.active,
        )
    except WorkflowValidationError as exc:
        raise _invalid(exc)
    warnings = [e for e in manager.validate(workflow) if e.startswith("WARNING:")]
    return {**workflow.model_dump(mode="json"), "warnings": warnings}


@router.get("/workflows/{workflow_id}")
async def get_workflow(workflow_id: str, manager=Depends(_get_manager)):
    try:
        workflow = await manager.get(workflow_id)
    except WorkflowNotFound as exc:
        raise _not_found(exc)
    return workflow.model_dump(mode="json")


@router.put("/workflows/{workflow_id}")
async def update_workflow(
    workflow_id: str,
    body: WorkflowUpdateRequest,
    manager=Depends(_get_manager),
):
    """Edit a workflow.  Runs already started keep their original steps."""
    try:
        workflow = await manager.update(workflow_id, **body.model_dump(exclude_none=True))
    except WorkflowNotFound as exc:
        raise _not_found(exc)
    except WorkflowValidationError as exc:
        raise _invalid(exc)
    return workflow.model_dump(mode="json")


@router.delete("/workflows/{workflow_id}", status_code=204)
async def delete_workflow(workflow_id: str, manager=Depends(_get_manager)):
    """Delete a workflow definition.  Its runs are kept."""
    try:
        await manager.delete(workflow_id)
    except WorkflowNotFound as exc:
        raise _not_found(exc)


@router.post("/workflows/{workflow_id}/activate")
async def activate_workflow(workflow_id: str, manager=Depends(_get_manager)):
    try:
        workflow = await manager.activate(workflow_id)
    except WorkflowNotFound as exc:
        raise _not_found(exc)
    except WorkflowValidationError as exc:
        raise _invalid(exc)
    return workflow.model_dump(mode="json")


@router.post("/workflows/{workflow_id}/deactivate")
async def deactivate_workflow(workflow_id: str, manager=Depends(_get_manager)):
    try:
        workflow = await manager.deactivate(workflow_id)
    except WorkflowNotFound as exc:
        raise _not_found(exc)
    return workflow.model_dump(mode="json")
