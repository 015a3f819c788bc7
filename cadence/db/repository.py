"""Data access layer.

This is the ONLY layer that talks to the database.  Methods take and return
the Pydantic types from ``cadence.types``; ORM rows never leak out.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from cadence.db.models import AuditEntryModel, TriggerClaimModel, WorkflowModel, WorkflowRunModel
from cadence.types import (
    TERMINAL_STATUSES,
    AuditEntry,
    AuditEntryType,
    AuditQuery,
    RunQuery,
    RunStatus,
    TriggerType,
    Workflow,
    WorkflowRun,
)

_TERMINAL_VALUES = [s.value for s in TERMINAL_STATUSES]


def _utc(dt: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything in CADENCE is aware UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class Repository:
    """All database operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # ── Workflows ──
    @staticmethod
    def _model_to_workflow(m: WorkflowModel) -> Workflow:
        return Workflow.model_validate({
            "id": m.id,
            "name": m.name,
            "description": m.description or "",
            "active": m.active,
            "trigger_type": m.trigger_type,
            "trigger_config": m.trigger_config or {},
            "steps": m.steps or [],
            "execution_count": m.execution_count or 0,
            "created_at": _utc(m.created_at),
            "updated_at": _utc(m.updated_at),
        })

    @staticmethod
    def _workflow_values(workflow: Workflow) -> dict[str, Any]:
        data = workflow.model_dump(mode="json")
        return {
            "name": workflow.name,
            "description": workflow.description,
            "active": workflow.active,
            "trigger_type": workflow.trigger_type.value,
            "trigger_config": data["trigger_config"],
            "steps": data["steps"],
            "execution_count": workflow.execution_count,
            "created_at": _utc(workflow.created_at),
            "updated_at": _utc(workflow.updated_at),
        }

    async def create_workflow(self, workflow: Workflow) -> Workflow:
        """Persist a new workflow."""
        record = WorkflowModel(id=workflow.id, **self._workflow_values(workflow))
        self.session.add(record)
        await self.session.commit()
        await self.session.refresh(record)
        return self._model_to_workflow(record)

    async def get_workflow(self, workflow_id: str) -> Optional[Workflow]:
        result = await self.session.execute(
            select(WorkflowModel).where(WorkflowModel.id == workflow_id)
        )
        m = result.scalar_one_or_none()
        return self._model_to_workflow(m) if m is not None else None

    async def list_workflows(
        self,
        active_only: bool = False,
        trigger_type: Optional[TriggerType] = None,
    ) -> list[Workflow]:
        """List workflows, newest first, with optional filters."""
        query = select(WorkflowModel)
        if active_only:
            query = query.where(WorkflowModel.active.is_(True))
        if trigger_type is not None:
            query = query.where(WorkflowModel.trigger_type == TriggerType(trigger_type).value)
        query = query.order_by(WorkflowModel.created_at.desc())
        result = await self.session.execute(query)
        return [self._model_to_workflow(m) for m in result.scalars().all()]

    async def update_workflow(self, workflow: Workflow) -> Optional[Workflow]:
        """Full replace of an existing workflow.  ``execution_count`` is left to the counter."""
        result = await self.session.execute(
            select(WorkflowModel).where(WorkflowModel.id == workflow.id)
        )
        record = result.scalar_one_or_none()
        if record is None:
            return None
        values = self._workflow_values(workflow)
        values.pop("execution_count")
        values.pop("created_at")
        for key, value in values.items():
            setattr(record, key, value)
        await self.session.commit()
        await self.session.refresh(record)
        return self._model_to_workflow(record)

    async def delete_workflow(self, workflow_id: str) -> bool:
        """Delete a workflow definition.  Runs are retained."""
        result = await self.session.execute(
            delete(WorkflowModel).where(WorkflowModel.id == workflow_id)
        )
        await self.session.commit()
        return result.rowcount > 0

    async def increment_execution_count(self, workflow_id: str) -> int:
        """Atomically add one to ``execution_count``.  Returns the new value (0 if missing)."""
        await self.session.execute(
            update(WorkflowModel)
            .where(WorkflowModel.id == workflow_id)
            .values(execution_count=WorkflowModel.execution_count + 1)
        )
        await self.session.commit()
        result = await self.session.execute(
            select(WorkflowModel.execution_count).where(WorkflowModel.id == workflow_id)
        )
        return result.scalar_one_or_none() or 0

    # ── Runs ──
    @staticmethod
    def _model_to_run(m: WorkflowRunModel) -> WorkflowRun:
        return WorkflowRun.model_validate({
            "id": m.id,
            "workflow_id": m.workflow_id,
            "workflow_name": m.workflow_name or "",
            "triggering_event_id": m.triggering_event_id,
            "trigger_payload": m.trigger_payload or {},
            "subject_entity_type": m.subject_entity_type,
            "subject_entity_id": m.subject_entity_id,
            "steps_snapshot": m.steps_snapshot or [],
            "cursor": m.cursor,
            "status": m.status,
            "scheduled_resume_at": _utc(m.scheduled_resume_at),
            "step_results": m.step_results or [],
            "steps_executed": m.steps_executed,
            "version": m.version,
            "error": m.error,
            "created_at": _utc(m.created_at),
            "updated_at": _utc(m.updated_at),
            "completed_at": _utc(m.completed_at),
        })

    @staticmethod
    def _run_values(run: WorkflowRun) -> dict[str, Any]:
        data = run.model_dump(mode="json")
        return {
            "workflow_id": run.workflow_id,
            "workflow_name": run.workflow_name,
            "triggering_event_id": run.triggering_event_id,
            "trigger_payload": data["trigger_payload"],
            "subject_entity_type": run.subject_entity_type,
            "subject_entity_id": run.subject_entity_id,
            "steps_snapshot": data["steps_snapshot"],
            "cursor": run.cursor,
            "status": run.status.value,
            "scheduled_resume_at": _utc(run.scheduled_resume_at),
            "step_results": data["step_results"],
            "steps_executed": run.steps_executed,
            "version": run.version,
            "error": run.error,
            "created_at": _utc(run.created_at),
            "updated_at": _utc(run.updated_at),
            "completed_at": _utc(run.completed_at),
        }

    async def create_run(self, run: WorkflowRun) -> WorkflowRun:
        """Persist a new run."""
        record = WorkflowRunModel(id=run.id, **self._run_values(run))
        self.session.add(record)
        await self.session.commit()
        await self.session.refresh(record)
        return self._model_to_run(record)

    async def get_run(self, run_id: str) -> Optional[WorkflowRun]:
        result = await self.session.execute(
            select(WorkflowRunModel).where(WorkflowRunModel.id == run_id)
        )
        m = result.scalar_one_or_none()
        return self._model_to_run(m) if m is not None else None

    async def compare_and_swap_run(self, run: WorkflowRun, expected_version: int) -> bool:
        """Replace the stored run iff its version is *expected_version* and it is not terminal.

        Returns True if exactly one row was written.
        """
        values = self._run_values(run)
        values.pop("created_at")
        result = await self.session.execute(
            update(WorkflowRunModel)
            .where(
                WorkflowRunModel.id == run.id,
                WorkflowRunModel.version == expected_version,
                WorkflowRunModel.status.notin_(_TERMINAL_VALUES),
            )
            .values(**values)
        )
        await self.session.commit()
        return result.rowcount == 1

    async def list_due_waiting_runs(self, now: datetime) -> list[WorkflowRun]:
        """Waiting runs with ``scheduled_resume_at <= now``, earliest first."""
        result = await self.session.execute(
            select(WorkflowRunModel)
            .where(
                WorkflowRunModel.status == RunStatus.WAITING.value,
                WorkflowRunModel.scheduled_resume_at <= _utc(now),
            )
            .order_by(WorkflowRunModel.scheduled_resume_at)
        )
        return [self._model_to_run(m) for m in result.scalars().all()]

    async def list_stale_running_runs(self, older_than: datetime) -> list[WorkflowRun]:
        """Running runs not written since *older_than*, oldest first."""
        result = await self.session.execute(
            select(WorkflowRunModel)
            .where(
                WorkflowRunModel.status == RunStatus.RUNNING.value,
                WorkflowRunModel.updated_at <= _utc(older_than),
            )
            .order_by(WorkflowRunModel.updated_at)
        )
        return [self._model_to_run(m) for m in result.scalars().all()]

    async def list_runs(self, query: RunQuery) -> list[WorkflowRun]:
        """Runs matching *query*, newest first."""
        stmt = select(WorkflowRunModel)
        if query.workflow_id is not None:
            stmt = stmt.where(WorkflowRunModel.workflow_id == query.workflow_id)
        if query.statuses is not None:
            stmt = stmt.where(WorkflowRunModel.status.in_([s.value for s in query.statuses]))
        if query.subject_entity_id is not None:
            stmt = stmt.where(WorkflowRunModel.subject_entity_id == query.subject_entity_id)
        if query.completed_after is not None:
            stmt = stmt.where(WorkflowRunModel.completed_at >= _utc(query.completed_after))
        stmt = (
            stmt.order_by(WorkflowRunModel.created_at.desc())
            .offset(query.offset)
            .limit(query.limit)
        )
        result = await self.session.execute(stmt)
        return [self._model_to_run(m) for m in result.scalars().all()]

    # ── Trigger claims ──
    async def claim_trigger(self, workflow_id: str, event_id: str) -> bool:
        """Insert the (workflow_id, event_id) claim.  False if it already exists."""
        self.session.add(TriggerClaimModel(workflow_id=workflow_id, event_id=event_id))
        try:
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            return False
        return True

    # ── Audit ──
    @staticmethod
    def _model_to_audit(m: AuditEntryModel) -> AuditEntry:
        return AuditEntry(
            id=m.id,
            entry_type=AuditEntryType(m.entry_type),
            workflow_id=m.workflow_id,
            run_id=m.run_id,
            event_id=m.event_id,
            step_index=m.step_index,
            details=m.details or {},
            created_at=_utc(m.created_at),
        )

    async def append_audit_entry(self, entry: AuditEntry) -> AuditEntry:
        record = AuditEntryModel(
            id=entry.id,
            entry_type=entry.entry_type.value,
            workflow_id=entry.workflow_id,
            run_id=entry.run_id,
            event_id=entry.event_id,
            step_index=entry.step_index,
            details=entry.model_dump(mode="json")["details"],
            created_at=_utc(entry.created_at),
        )
        self.session.add(record)
        await self.session.commit()
        return entry

    async def query_audit(self, filters: AuditQuery) -> list[AuditEntry]:
        """Audit entries matching *filters*, oldest first."""
        stmt = select(AuditEntryModel)
        if filters.workflow_id is not None:
            stmt = stmt.where(AuditEntryModel.workflow_id == filters.workflow_id)
        if filters.run_id is not None:
            stmt = stmt.where(AuditEntryModel.run_id == filters.run_id)
        if filters.event_id is not None:
            stmt = stmt.where(AuditEntryModel.event_id == filters.event_id)
        if filters.entry_types:
            stmt = stmt.where(AuditEntryModel.entry_type.in_([t.value for t in filters.entry_types]))
        if filters.since is not None:
            stmt = stmt.where(AuditEntryModel.created_at >= _utc(filters.since))
        if filters.until is not None:
            stmt = stmt.where(AuditEntryModel.created_at <= _utc(filters.until))
        stmt = (
            stmt.order_by(AuditEntryModel.created_at, AuditEntryModel.id)
            .offset(filters.offset)
            .limit(filters.limit)
        )
        result = await self.session.execute(stmt)
        return [self._model_to_audit(m) for m in result.scalars().all()]


class SessionRepository:
    """Thin proxy that opens a fresh session per call to avoid stale state.

    Long-running processes (API, workers, the engine's tick loop) share one
    instance; every call gets its own short-lived session and transaction.
    """

    def __init__(self, session_factory) -> None:
        self._session_factory = session_factory

    async def _call(self, method: str, *args, **kwargs):
        async with self._session_factory() as session:
            return await getattr(Repository(session), method)(*args, **kwargs)

    async def create_workflow(self, workflow):
        return await self._call("create_workflow", workflow)

    async def get_workflow(self, workflow_id):
        return await self._call("get_workflow", workflow_id)

    async def list_workflows(self, active_only=False, trigger_type=None):
        return await self._call("list_workflows", active_only=active_only, trigger_type=trigger_type)

    async def update_workflow(self, workflow):
        return await self._call("update_workflow", workflow)

    async def delete_workflow(self, workflow_id):
        return await self._call("delete_workflow", workflow_id)

    async def increment_execution_count(self, workflow_id):
        return await self._call("increment_execution_count", workflow_id)

    async def create_run(self, run):
        return await self._call("create_run", run)

    async def get_run(self, run_id):
        return await self._call("get_run", run_id)

    async def compare_and_swap_run(self, run, expected_version):
        return await self._call("compare_and_swap_run", run, expected_version)

    async def list_due_waiting_runs(self, now):
        return await self._call("list_due_waiting_runs", now)

    async def list_stale_running_runs(self, older_than):
        return await self._call("list_stale_running_runs", older_than)

    async def list_runs(self, query):
        return await self._call("list_runs", query)

    async def claim_trigger(self, workflow_id, event_id):
        return await self._call("claim_trigger", workflow_id, event_id)

    async def append_audit_entry(self, entry):
        return await self._call("append_audit_entry", entry)

    async def query_audit(self, filters):
        return await self._call("query_audit", filters)
