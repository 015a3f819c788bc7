"""Append-only audit log. Every match, step and transition goes here.

Without a repository the log lives in memory and keeps every entry for the
life of the process.  With a repository the database is the only store:
entries are written there and queries are answered from it.

The log also owns the trigger-claim guard: a ``(workflow_id, event_id)``
pair can be claimed once, which is what makes event replay harmless.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from cadence.types import AuditEntry, AuditEntryType, AuditQuery

logger = logging.getLogger(__name__)


class AuditLog:
    """Append-only record of what the engine did and why."""

    def __init__(self, repository=None):
        """
        Args:
            repository: Injected DB repository for persistence.
                        Can be None for in-memory only mode.
        """
        self._memory_store: list[AuditEntry] = []
        self._claims: set[tuple[str, str]] = set()
        self._repository = repository

    async def claim_trigger(self, workflow_id: str, event_id: str) -> bool:
        """Claim *(workflow_id, event_id)*. Returns False if already claimed."""
        if self._repository is not None:
            return await self._repository.claim_trigger(workflow_id, event_id)
        key = (workflow_id, event_id)
        if key in self._claims:
            return False
        self._claims.add(key)
        return True

    async def append(self, entry: AuditEntry) -> AuditEntry:
        """Append *entry* to the repository, or to memory when there is none."""
        if self._repository is not None:
            await self._repository.append_audit_entry(entry)
        else:
            self._memory_store.append(entry)
        return entry

    async def record(
        self,
        entry_type: AuditEntryType,
        *,
        workflow_id: Optional[str] = None,
        run_id: Optional[str] = None,
        event_id: Optional[str] = None,
        step_index: Optional[int] = None,
        **details: Any,
    ) -> AuditEntry:
        """Build and append an entry in one call."""
        entry = AuditEntry(
            entry_type=entry_type,
            workflow_id=workflow_id,
            run_id=run_id,
            event_id=event_id,
            step_index=step_index,
            details=details,
        )
        return await self.append(entry)

    async def query(self, filters: Optional[AuditQuery] = None) -> list[AuditEntry]:
        """Entries matching *filters*, oldest first.

        Args:
            filters: Workflow/run/event/type/time filters plus limit and offset.
        """
        filters = filters or AuditQuery()
        if self._repository is not None:
            return await self._repository.query_audit(filters)

        entries = [e for e in self._memory_store if _matches(e, filters)]
        return entries[filters.offset: filters.offset + filters.limit]

    async def run_history(self, run_id: str) -> list[AuditEntry]:
        """Full trail for one run."""
        return await self.query(AuditQuery(run_id=run_id, limit=1000))


def _matches(entry: AuditEntry, f: AuditQuery) -> bool:
    if f.workflow_id is not None and entry.workflow_id != f.workflow_id:
        return False
    if f.run_id is not None and entry.run_id != f.run_id:
        return False
    if f.event_id is not None and entry.event_id != f.event_id:
        return False
    if f.entry_types and entry.entry_type not in f.entry_types:
        return False
    if f.since is not None and entry.created_at < f.since:
        return False
    if f.until is not None and entry.created_at > f.until:
        return False
    return True
