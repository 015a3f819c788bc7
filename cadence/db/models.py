"""All ORM models. These map 1:1 to the Pydantic types but are SQLAlchemy models.

Tables: workflows, workflow_runs, audit_entries, trigger_claims
Runs carry no foreign key to workflows: deleting a definition never deletes
its runs.  Indexes on common query patterns.
"""

from sqlalchemy import Column, String, Integer, DateTime, JSON, Boolean, Text, Index, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase
from datetime import datetime, timezone
import uuid


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class WorkflowModel(Base):
    __tablename__ = "workflows"
    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String, nullable=False)
    description = Column(Text, default="")
    active = Column(Boolean, default=True, nullable=False)
    trigger_type = Column(String, nullable=False)       # TriggerType value
    trigger_config = Column(JSON, default=dict)
    steps = Column(JSON, default=list)                  # list of {action_type, action_config}
    execution_count = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_now)
    updated_at = Column(DateTime(timezone=True), default=_now)

    __table_args__ = (Index("ix_workflow_active_trigger", "active", "trigger_type"),)


class WorkflowRunModel(Base):
    __tablename__ = "workflow_runs"
    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    workflow_id = Column(String, nullable=False, index=True)
    workflow_name = Column(String, default="")
    triggering_event_id = Column(String, nullable=False)
    trigger_payload = Column(JSON, default=dict)
    subject_entity_type = Column(String, nullable=False)
    subject_entity_id = Column(String, nullable=False, index=True)
    steps_snapshot = Column(JSON, nullable=False)
    cursor = Column(Integer, default=0, nullable=False)
    status = Column(String, default="pending", nullable=False)     # RunStatus value
    scheduled_resume_at = Column(DateTime(timezone=True), nullable=True)
    step_results = Column(JSON, default=list)
    steps_executed = Column(Integer, default=0, nullable=False)
    version = Column(Integer, default=0, nullable=False)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_now, index=True)
    updated_at = Column(DateTime(timezone=True), default=_now)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_run_status_resume", "status", "scheduled_resume_at"),
        Index("ix_run_status_updated", "status", "updated_at"),
    )


class AuditEntryModel(Base):
    __tablename__ = "audit_entries"
    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    entry_type = Column(String, nullable=False, index=True)         # AuditEntryType value
    workflow_id = Column(String, nullable=True, index=True)
    run_id = Column(String, nullable=True, index=True)
    event_id = Column(String, nullable=True)
    step_index = Column(Integer, nullable=True)
    details = Column(JSON, default=dict)
    created_at = Column(DateTime(timezone=True), default=_now, index=True)


class TriggerClaimModel(Base):
    __tablename__ = "trigger_claims"
    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    workflow_id = Column(String, nullable=False)
    event_id = Column(String, nullable=False)
    claimed_at = Column(DateTime(timezone=True), default=_now)

    __table_args__ = (UniqueConstraint("workflow_id", "event_id", name="uq_trigger_claim"),)
