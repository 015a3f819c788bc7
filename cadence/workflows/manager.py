"""
WorkflowManager — lifecycle management for Workflow definitions.

Supports both in-memory operation (no repository, for tests and CLI) and
full persistence when a Repository is provided, matching the pattern used
by AuditLog and RunStore.  With a repository, reads go to the database so
that API processes and workers see each other's edits.
"""

from __future__ import annotations

from typing import Any, Optional

from pydantic import ValidationError

from cadence.config import CadenceConfig
from cadence.exceptions import WorkflowNotFound, WorkflowValidationError
from cadence.types import TriggerType, Workflow, utcnow

from .validator import WorkflowValidator

# Fields an operator may change through update(); everything else is engine-owned.
_EDITABLE_FIELDS = ("name", "description", "active", "trigger_type", "trigger_config", "steps")


def _violations(exc: ValidationError) -> list[str]:
    out = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "workflow"
        out.append(f"{loc}: {err.get('msg', 'invalid')}")
    return out


def parse_workflow(data: dict[str, Any]) -> Workflow:
    """Build a Workflow from plain data, turning pydantic errors into violations.

    Raises:
        WorkflowValidationError: the data does not describe a well-formed workflow.
    """
    try:
        return Workflow.model_validate(data)
    except ValidationError as exc:
        raise WorkflowValidationError(
            "Workflow definition is malformed", violations=_violations(exc)
        ) from exc


class WorkflowManager:
    """
    Manages the full lifecycle of Workflow objects.

    Args:
        repository:  Optional Repository instance for persistence.
                     When None, all state is kept in-memory (useful for tests).
        validator:   WorkflowValidator instance.  A default instance is created
                     if not supplied.
        config:      CadenceConfig instance.  A default instance is created if
                     not supplied.
    """

    def __init__(
        self,
        repository: Any = None,
        validator: Optional[WorkflowValidator] = None,
        config: Optional[CadenceConfig] = None,
    ) -> None:
        self._repository = repository
        self._validator = validator or WorkflowValidator()
        self._config = config or CadenceConfig()

        # in-memory store (always populated, even when repository is present)
        self._store: dict[str, Workflow] = {}

    # ── Internal helpers ──────────────────────────────────────────────────────

    def _hard_errors(self, errors: list[str]) -> list[str]:
        return [e for e in errors if not e.startswith("WARNING:")]

    def validate(self, workflow: Workflow) -> list[str]:
        """All errors and warnings for *workflow*, without raising."""
        return self._validator.validate(
            workflow,
            max_steps=self._config.max_steps_per_run,
            mutable_fields=self._config.mutable_fields,
        )

    def _validate_or_raise(self, workflow: Workflow) -> None:
        hard = self._hard_errors(self.validate(workflow))
        if hard:
            raise WorkflowValidationError(
                "Workflow validation failed", violations=hard
            )

    # ── CRUD ──────────────────────────────────────────────────────────────────

    async def save(self, workflow: Workflow) -> Workflow:
        """
        Validate and store *workflow*, inserting or replacing by id.

        Replacing keeps the stored ``execution_count`` and ``created_at``;
        those are never operator-editable.  Runs already created keep the
        steps they snapshotted.

        Raises:
            WorkflowValidationError: if the workflow fails validation.
        """
        self._validate_or_raise(workflow)
        existing = await self._find(workflow.id)
        if existing is None:
            self._store[workflow.id] = workflow
            if self._repository is not None:
                await self._repository.create_workflow(workflow)
            return workflow

        updated = workflow.model_copy(update={
            "execution_count": existing.execution_count,
            "created_at": existing.created_at,
            "updated_at": utcnow(),
        })
        self._store[updated.id] = updated
        if self._repository is not None:
            await self._repository.update_workflow(updated)
        return updated

    async def create(
        self,
        name: str,
        trigger_type: TriggerType,
        trigger_config: Optional[dict[str, Any]] = None,
        steps: Optional[list[dict[str, Any]]] = None,
        description: str = "",
        active: bool = True,
    ) -> Workflow:
        """
        Build, validate and persist a new workflow.

        Raises:
            WorkflowValidationError: if the definition is malformed or invalid.
        """
        workflow = parse_workflow({
            "name": name,
            "description": description,
            "active": active,
            "trigger_type": trigger_type,
            "trigger_config": trigger_config or {},
            "steps": steps or [],
        })
        return await self.save(workflow)

    async def _find(self, workflow_id: str) -> Optional[Workflow]:
        if self._repository is not None:
            workflow = await self._repository.get_workflow(workflow_id)
            if workflow is not None:
                self._store[workflow.id] = workflow
            else:
                self._store.pop(workflow_id, None)
            return workflow
        return self._store.get(workflow_id)

    async def get(self, workflow_id: str) -> Workflow:
        """
        Load a workflow by ID.

        Raises:
            WorkflowNotFound: if not found.
        """
        workflow = await self._find(workflow_id)
        if workflow is None:
            raise WorkflowNotFound(
                f"Workflow '{workflow_id}' not found.", workflow_id=workflow_id
            )
        return workflow

    async def update(self, workflow_id: str, **changes: Any) -> Workflow:
        """
        Apply operator edits and re-validate.

        Raises:
            WorkflowNotFound: if the workflow does not exist.
            WorkflowValidationError: if the edit makes the workflow invalid, or
                names a field that is not editable.
        """
        unknown = [k for k in changes if k not in _EDITABLE_FIELDS]
        if unknown:
            raise WorkflowValidationError(
                "Workflow update names non-editable fields",
                violations=[f"{k}: not editable" for k in unknown],
            )
        existing = await self.get(workflow_id)
        data = existing.model_dump()
        data.update({k: v for k, v in changes.items() if v is not None})
        if "trigger_type" in changes and "trigger_config" not in changes:
            data["trigger_config"] = {}
        return await self.save(parse_workflow(data))

    async def list(
        self,
        active_only: bool = False,
        trigger_type: Optional[TriggerType] = None,
        limit: int = 500,
        offset: int = 0,
    ) -> list[Workflow]:
        """Return workflows, optionally only active ones of one trigger type."""
        if self._repository is not None:
            results = await self._repository.list_workflows(
                active_only=active_only, trigger_type=trigger_type
            )
            for wf in results:
                self._store[wf.id] = wf
        else:
            results = [
                wf for wf in self._store.values()
                if (not active_only or wf.active)
                and (trigger_type is None or wf.trigger_type == TriggerType(trigger_type))
            ]
        # Sort by creation time descending, then paginate
        results = sorted(results, key=lambda w: w.created_at, reverse=True)
        return results[offset: offset + limit]

    async def delete(self, workflow_id: str) -> None:
        """
        Remove a workflow definition.  Its runs are retained and keep executing.

        Raises:
            WorkflowNotFound: if the workflow does not exist.
        """
        await self.get(workflow_id)
        self._store.pop(workflow_id, None)
        if self._repository is not None:
            await self._repository.delete_workflow(workflow_id)

    # ── Status ────────────────────────────────────────────────────────────────

    async def activate(self, workflow_id: str) -> Workflow:
        """Re-validate and activate a workflow."""
        return await self.update(workflow_id, active=True)

    async def deactivate(self, workflow_id: str) -> Workflow:
        """Stop new runs.  Runs in flight are unaffected."""
        workflow = await self.get(workflow_id)
        updated = workflow.model_copy(update={"active": False, "updated_at": utcnow()})
        self._store[updated.id] = updated
        if self._repository is not None:
            await self._repository.update_workflow(updated)
        return updated

    async def increment_execution_count(self, workflow_id: str) -> int:
        """Add one to ``execution_count``; called once per run created."""
        if self._repository is not None:
            count = await self._repository.increment_execution_count(workflow_id)
            cached = self._store.get(workflow_id)
            if cached is not None:
                self._store[workflow_id] = cached.model_copy(update={"execution_count": count})
            return count
        workflow = self._store.get(workflow_id)
        if workflow is None:
            return 0
        count = workflow.execution_count + 1
        self._store[workflow_id] = workflow.model_copy(update={"execution_count": count})
        return count
