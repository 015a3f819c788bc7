"""Pydantic models for API request/response. Mirrors types.py for API I/O."""

from datetime import datetime
from pydantic import BaseModel, Field
from typing import Any, Optional


# ── Requests ──

class EventRequest(BaseModel):
    id: Optional[str] = None                  # supply a stable id to make retries idempotent
    category: str                             # TriggerType value
    entity_type: str = "prospect"
    entity_id: str = Field(..., min_length=1)
    payload: dict[str, Any] = {}
    occurred_at: Optional[datetime] = None


class WorkflowRequest(BaseModel):
    name: str
    description: str = ""
    active: bool = True
    trigger_type: str
    trigger_config: dict[str, Any] = {}
    steps: list[dict[str, Any]] = []


class WorkflowUpdateRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    active: Optional[bool] = None
    trigger_type: Optional[str] = None
    trigger_config: Optional[dict[str, Any]] = None
    steps: Optional[list[dict[str, Any]]] = None


class CancelRequest(BaseModel):
    reason: str = Field(default="", max_length=500)


class TickRequest(BaseModel):
    now: Optional[datetime] = None


# ── Responses ──

class EventAccepted(BaseModel):
    event_id: str
    handlers: int


class HealthResponse(BaseModel):
    status: str
    version: str
    services: dict[str, bool]
    queue_backend: str
