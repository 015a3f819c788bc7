"""RunStore — durable home of WorkflowRun records.

Supports in-memory operation (no repository, for tests and the CLI) and full
persistence when a Repository is provided, matching the pattern used by
AuditLog and WorkflowManager.  With a repository, the database is the only
source of truth: nothing is cached, because another worker may own the run.

Ownership is optimistic.  Every write goes through ``compare_and_swap`` with
the version the writer read; a stale writer gets ``None`` back and must
reload instead of overwriting.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from cadence.types import TERMINAL_STATUSES, RunQuery, RunStatus, WorkflowRun, utcnow

logger = logging.getLogger(__name__)


class RunStore:
    """Create / load / compare-and-swap WorkflowRuns."""

    def __init__(self, repository=None, clock: Callable[[], datetime] = utcnow) -> None:
        self._repository = repository
        self._clock = clock
        self._store: dict[str, WorkflowRun] = {}

    async def create(self, run: WorkflowRun) -> WorkflowRun:
        if self._repository is not None:
            return await self._repository.create_run(run)
        if run.id in self._store:
            raise ValueError(f"Run '{run.id}' already exists")
        self._store[run.id] = run.model_copy(deep=True)
        return run

    async def load(self, run_id: str) -> Optional[WorkflowRun]:
        if self._repository is not None:
            return await self._repository.get_run(run_id)
        run = self._store.get(run_id)
        return run.model_copy(deep=True) if run is not None else None

    async def compare_and_swap(
        self, run: WorkflowRun, expected_version: int
    ) -> Optional[WorkflowRun]:
        """Write *run* iff the stored version still equals *expected_version*.

        Returns the stored run (version bumped) on success, ``None`` on a
        version conflict.  A run already in a terminal status is never
        overwritten and always reports a conflict.
        """
        updated = run.model_copy(update={
            "version": expected_version + 1,
            "updated_at": self._clock(),
        })
        if self._repository is not None:
            ok = await self._repository.compare_and_swap_run(updated, expected_version)
            return updated if ok else None

        current = self._store.get(run.id)
        if current is None:
            return None
        if current.version != expected_version or current.status in TERMINAL_STATUSES:
            logger.debug(
                "CAS conflict run=%s expected=%d stored=%d status=%s",
                run.id, expected_version, current.version, current.status.value,
            )
            return None
        self._store[run.id] = updated.model_copy(deep=True)
        return updated

    async def list_due_waiting(self, now: Optional[datetime] = None) -> list[WorkflowRun]:
        """WAITING runs whose ``scheduled_resume_at`` is at or before *now*."""
        now = now or utcnow()
        if self._repository is not None:
            return await self._repository.list_due_waiting_runs(now)
        due = [
            r for r in self._store.values()
            if r.status == RunStatus.WAITING
            and r.scheduled_resume_at is not None
            and r.scheduled_resume_at <= now
        ]
        due.sort(key=lambda r: r.scheduled_resume_at)
        return [r.model_copy(deep=True) for r in due]

    async def list_stale_running(self, older_than: datetime) -> list[WorkflowRun]:
        """RUNNING runs last written at or before *older_than*, oldest first.

        These are runs whose queue entry was lost: a crash between a commit
        and the next step, or an enqueue that never reached the broker.
        """
        if self._repository is not None:
            return await self._repository.list_stale_running_runs(older_than)
        stale = [
            r for r in self._store.values()
            if r.status == RunStatus.RUNNING and r.updated_at <= older_than
        ]
        stale.sort(key=lambda r: r.updated_at)
        return [r.model_copy(deep=True) for r in stale]

    async def list_terminal(self, query: Optional[RunQuery] = None) -> list[WorkflowRun]:
        """Finished runs (completed, failed, cancelled), newest first."""
        query = query or RunQuery()
        statuses = [s for s in (query.statuses or TERMINAL_STATUSES) if s in TERMINAL_STATUSES]
        return await self.list_runs(query.model_copy(update={"statuses": statuses}))

    async def list_runs(self, query: Optional[RunQuery] = None) -> list[WorkflowRun]:
        """Runs matching *query*, newest first."""
        query = query or RunQuery()
        if self._repository is not None:
            return await self._repository.list_runs(query)

        results = [r for r in self._store.values() if _matches(r, query)]
        results.sort(key=lambda r: r.created_at, reverse=True)
        return [r.model_copy(deep=True) for r in results[query.offset: query.offset + query.limit]]


def _matches(run: WorkflowRun, q: RunQuery) -> bool:
    if q.workflow_id is not None and run.workflow_id != q.workflow_id:
        return False
    if q.statuses is not None and run.status not in q.statuses:
        return False
    if q.subject_entity_id is not None and run.subject_entity_id != q.subject_entity_id:
        return False
    if q.completed_after is not None and (
        run.completed_at is None or run.completed_at < q.completed_after
    ):
        return False
    return True
