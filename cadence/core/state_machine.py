"""Allowed WorkflowRun status transitions.

PENDING → RUNNING → WAITING ⇄ RUNNING → {COMPLETED, FAILED, CANCELLED}.
Terminal statuses have no outgoing edges.
"""

from __future__ import annotations

from cadence.exceptions import EngineInvariantError
from cadence.types import RunStatus, WorkflowRun

_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.PENDING: frozenset({RunStatus.RUNNING, RunStatus.CANCELLED}),
    RunStatus.RUNNING: frozenset({
        RunStatus.RUNNING,
        RunStatus.WAITING,
        RunStatus.COMPLETED,
        RunStatus.FAILED,
        RunStatus.CANCELLED,
    }),
    RunStatus.WAITING: frozenset({RunStatus.RUNNING, RunStatus.FAILED, RunStatus.CANCELLED}),
    RunStatus.COMPLETED: frozenset(),
    RunStatus.FAILED: frozenset(),
    RunStatus.CANCELLED: frozenset(),
}


def can_transition(current: RunStatus, target: RunStatus) -> bool:
    return target in _TRANSITIONS[current]


def transition(run: WorkflowRun, target: RunStatus, **updates) -> WorkflowRun:
    """Return a copy of *run* moved to *target* with *updates* applied.

    Raises:
        EngineInvariantError: the transition is not allowed, or *updates*
            would move the cursor backwards.
    """
    if not can_transition(run.status, target):
        raise EngineInvariantError(
            f"Illegal run transition {run.status.value} → {target.value}",
            run_id=run.id,
        )
    cursor = updates.get("cursor", run.cursor)
    if cursor < run.cursor:
        raise EngineInvariantError(
            f"Cursor may not move backwards ({run.cursor} → {cursor})",
            run_id=run.id,
        )
    if target != RunStatus.WAITING:
        updates.setdefault("scheduled_resume_at", None)
    return run.model_copy(update={"status": target, **updates})
