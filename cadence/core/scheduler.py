"""ExecutionScheduler — creates runs on trigger matches and drives them step by step.

Each call to ``process`` advances one run by exactly one step:

    load (with version) → execute steps_snapshot[cursor] → compare_and_swap

A run that is still Running afterwards is re-enqueued; a run that hit a
wait step is parked as Waiting and rediscovered by ``resume_due``.  Work is
consumed either by a pool of asyncio workers (``start``/``stop``), inline
(``run_pending``), or by an external queue when an ``enqueue`` hook is
given (the arq worker uses this).
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

from cadence.config import CadenceConfig
from cadence.core.audit import AuditLog
from cadence.core.executor import ActionExecutor
from cadence.core.run_store import RunStore
from cadence.core.state_machine import transition
from cadence.exceptions import (
    EngineInvariantError,
    RunNotFound,
    RunStateError,
    StepLimitExceeded,
)
from cadence.types import (
    AuditEntryType,
    Match,
    RunStatus,
    StepExecution,
    StepOutcome,
    StepResult,
    Workflow,
    WorkflowRun,
    utcnow,
)

logger = logging.getLogger(__name__)

_FINISHED_AUDIT = {
    RunStatus.COMPLETED: AuditEntryType.RUN_COMPLETED,
    RunStatus.FAILED: AuditEntryType.RUN_FAILED,
    RunStatus.CANCELLED: AuditEntryType.RUN_CANCELLED,
}


class ExecutionScheduler:
    """Owns the run lifecycle between trigger match and terminal status."""

    def __init__(
        self,
        run_store: RunStore,
        audit: AuditLog,
        executor: ActionExecutor,
        workflows=None,
        config: Optional[CadenceConfig] = None,
        callbacks: Optional[list] = None,
        clock: Callable[[], datetime] = utcnow,
        enqueue: Optional[Callable[[str], Awaitable[Any]]] = None,
    ) -> None:
        """
        Args:
            run_store: Durable run persistence.
            audit: Audit log; also holds the trigger-claim guard.
            executor: Executes one step.
            workflows: WorkflowManager, used to bump ``execution_count``.
            config: CadenceConfig (step ceiling, CAS retry budget, pool size).
            callbacks: Lifecycle hooks (see ``cadence.callbacks``).
            clock: Returns the current aware UTC datetime.
            enqueue: Async hook replacing the in-process queue, e.g. an arq
                     ``enqueue_job`` wrapper.
        """
        self._runs = run_store
        self._audit = audit
        self._executor = executor
        self._workflows = workflows
        self._config = config or CadenceConfig()
        self._callbacks = list(callbacks or [])
        self._clock = clock
        self._enqueue_hook = enqueue

        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._workers: list[asyncio.Task] = []

    # ── Worker pool ───────────────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return bool(self._workers)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def start(self, concurrency: Optional[int] = None) -> None:
        """Spawn *concurrency* worker tasks consuming the run queue."""
        if self._workers:
            return
        n = max(1, concurrency or self._config.worker_concurrency)
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"cadence-worker-{i}")
            for i in range(n)
        ]
        logger.info("ExecutionScheduler started with %d workers", n)

    async def stop(self) -> None:
        """Cancel all workers.

        Queued runs stay Running in the store; ``recover_stale`` re-enqueues
        them once their lease has expired.
        """
        workers, self._workers = self._workers, []
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        logger.info("ExecutionScheduler stopped")

    async def join(self) -> None:
        """Wait until every queued run id has been processed."""
        await self._queue.join()

    async def _worker(self, index: int) -> None:
        while True:
            run_id = await self._queue.get()
            try:
                await self.process(run_id)
            except Exception:
                logger.exception("[Scheduler] worker %d failed processing run=%s", index, run_id)
            finally:
                self._queue.task_done()

    async def run_pending(self) -> int:
        """Drain the queue in the calling task.  Returns the number of steps processed."""
        processed = 0
        while True:
            try:
                run_id = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return processed
            try:
                await self.process(run_id)
            except Exception:
                logger.exception("[Scheduler] inline processing failed for run=%s", run_id)
            finally:
                self._queue.task_done()
            processed += 1

    async def enqueue(self, run_id: str) -> None:
        if self._enqueue_hook is not None:
            await self._enqueue_hook(run_id)
        else:
            self._queue.put_nowait(run_id)

    # ── Run creation ──────────────────────────────────────────────────────────

    async def on_match(self, match: Match, workflow: Workflow) -> Optional[str]:
        """Create and enqueue a run for *match*.

        Returns:
            The new run id, or None when this (workflow, event) pair was
            already claimed.
        """
        event = match.event
        if not await self._audit.claim_trigger(workflow.id, event.id):
            logger.info(
                "[Scheduler] duplicate event=%s for workflow=%s ignored", event.id, workflow.id
            )
            return None

        await self._audit.record(
            AuditEntryType.TRIGGER_MATCHED,
            workflow_id=workflow.id,
            event_id=event.id,
            category=event.category.value,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
        )

        now = self._clock()
        run = WorkflowRun(
            workflow_id=workflow.id,
            workflow_name=workflow.name,
            triggering_event_id=event.id,
            trigger_payload=dict(event.payload),
            subject_entity_type=event.entity_type,
            subject_entity_id=event.entity_id,
            steps_snapshot=[step.model_copy(deep=True) for step in workflow.steps],
            created_at=now,
            updated_at=now,
        )
        run = transition(run, RunStatus.RUNNING)
        run = await self._runs.create(run)
        if self._workflows is not None:
            await self._workflows.increment_execution_count(workflow.id)

        await self._audit.record(
            AuditEntryType.RUN_CREATED,
            workflow_id=workflow.id,
            run_id=run.id,
            event_id=event.id,
            step_count=len(run.steps_snapshot),
        )
        await self._notify("on_run_created", run)
        await self.enqueue(run.id)
        logger.info(
            "[Scheduler] run=%s created for workflow=%s subject=%s:%s",
            run.id, workflow.id, run.subject_entity_type, run.subject_entity_id,
        )
        return run.id

    # ── Step advance ──────────────────────────────────────────────────────────

    async def process(self, run_id: str) -> Optional[WorkflowRun]:
        """Execute exactly one step of *run_id* and persist the outcome.

        Returns the run as stored afterwards, or None if it does not exist.
        Cancelled, finished and waiting runs are dropped untouched.
        """
        run = await self._runs.load(run_id)
        if run is None:
            logger.warning("[Scheduler] run=%s vanished before processing", run_id)
            return None
        if run.is_terminal or run.status != RunStatus.RUNNING:
            logger.debug("[Scheduler] run=%s is %s; dropping", run_id, run.status.value)
            return run

        try:
            if run.cursor >= len(run.steps_snapshot):
                return await self._finish_without_step(run)

            limit = self._config.max_steps_per_run
            if run.steps_executed >= limit:
                exc = StepLimitExceeded(
                    f"Run executed {run.steps_executed} steps; limit is {limit}",
                    limit=limit,
                    step_index=run.cursor,
                )
                result = StepResult(
                    step_index=run.cursor,
                    action_type=run.current_step.action_type,
                    outcome=StepOutcome.PERMANENT_FAILURE,
                    error=str(exc),
                    attempt_count=0,
                    completed_at=self._clock(),
                )
                return await self._commit(run, result, resume_at=None, count_step=False)

            step = run.current_step
            execution: StepExecution = await self._executor.execute(run, step)
            result = StepResult(
                step_index=run.cursor,
                action_type=step.action_type,
                outcome=execution.outcome,
                error=execution.error,
                attempt_count=execution.attempt_count,
                output=execution.output,
                completed_at=self._clock(),
            )
            return await self._commit(run, result, resume_at=execution.resume_at)
        except EngineInvariantError as exc:
            return await self._fail_invariant(run_id, exc)

    def _apply(
        self,
        run: WorkflowRun,
        result: StepResult,
        resume_at: Optional[datetime],
        count_step: bool = True,
    ) -> WorkflowRun:
        """The run as it should look after *result*."""
        executed = run.steps_executed + (1 if count_step else 0)
        results = [*run.step_results, result]
        now = self._clock()

        if result.outcome == StepOutcome.SUCCESS:
            cursor = run.cursor + 1
            if cursor >= len(run.steps_snapshot):
                return transition(
                    run, RunStatus.COMPLETED,
                    cursor=cursor, step_results=results, steps_executed=executed,
                    completed_at=now,
                )
            return transition(
                run, RunStatus.RUNNING,
                cursor=cursor, step_results=results, steps_executed=executed,
            )

        if result.outcome == StepOutcome.SUSPEND:
            if resume_at is None:
                raise EngineInvariantError(
                    f"Step {result.step_index} suspended without a resume time", run_id=run.id
                )
            return transition(
                run, RunStatus.WAITING,
                cursor=run.cursor + 1, step_results=results, steps_executed=executed,
                scheduled_resume_at=resume_at,
            )

        return transition(
            run, RunStatus.FAILED,
            step_results=results, steps_executed=executed,
            error=result.error, completed_at=now,
        )

    async def _commit(
        self,
        run: WorkflowRun,
        result: StepResult,
        resume_at: Optional[datetime],
        count_step: bool = True,
    ) -> Optional[WorkflowRun]:
        """Write the step outcome with compare-and-swap, re-applying it on benign conflicts.

        A conflict is benign when the reloaded run is still Running at the same
        cursor (another writer touched it without advancing).  If the run was
        cancelled or moved on meanwhile, the result goes to the audit log only.
        """
        current = run
        conflicts = 0
        while True:
            updated = self._apply(current, result, resume_at, count_step)
            stored = await self._runs.compare_and_swap(updated, current.version)
            if stored is not None:
                break

            conflicts += 1
            reloaded = await self._runs.load(run.id)
            if reloaded is None:
                raise EngineInvariantError(
                    f"Run '{run.id}' disappeared during commit", run_id=run.id
                )
            if reloaded.is_terminal or reloaded.status != RunStatus.RUNNING \
                    or reloaded.cursor != result.step_index:
                await self._audit.record(
                    AuditEntryType.STEP_EXECUTED,
                    workflow_id=run.workflow_id,
                    run_id=run.id,
                    step_index=result.step_index,
                    outcome=result.outcome.value,
                    attempt_count=result.attempt_count,
                    error=result.error,
                    output=result.output,
                    discarded=True,
                    run_status=reloaded.status.value,
                )
                logger.info(
                    "[Scheduler] run=%s step %d result discarded; run is %s at cursor %d",
                    run.id, result.step_index, reloaded.status.value, reloaded.cursor,
                )
                return reloaded
            if conflicts > self._config.max_cas_retries:
                raise EngineInvariantError(
                    f"Run '{run.id}' hit {conflicts} version conflicts committing "
                    f"step {result.step_index}",
                    run_id=run.id,
                )
            logger.debug("[Scheduler] run=%s version conflict %d; retrying", run.id, conflicts)
            current = reloaded

        await self._audit.record(
            AuditEntryType.STEP_EXECUTED,
            workflow_id=stored.workflow_id,
            run_id=stored.id,
            step_index=result.step_index,
            action_type=result.action_type,
            outcome=result.outcome.value,
            attempt_count=result.attempt_count,
            error=result.error,
            output=result.output,
        )
        await self._notify("on_step_executed", stored, result)
        await self._after_transition(stored)
        return stored

    async def _finish_without_step(self, run: WorkflowRun) -> Optional[WorkflowRun]:
        completed = transition(run, RunStatus.COMPLETED, completed_at=self._clock())
        stored = await self._runs.compare_and_swap(completed, run.version)
        if stored is None:
            return await self._runs.load(run.id)
        await self._after_transition(stored)
        return stored

    async def _after_transition(self, run: WorkflowRun) -> None:
        if run.status == RunStatus.RUNNING:
            await self.enqueue(run.id)
            return
        if run.status == RunStatus.WAITING:
            await self._audit.record(
                AuditEntryType.RUN_WAITING,
                workflow_id=run.workflow_id,
                run_id=run.id,
                step_index=run.cursor - 1,
                resume_at=run.scheduled_resume_at.isoformat(),
            )
            return
        await self._audit.record(
            _FINISHED_AUDIT[run.status],
            workflow_id=run.workflow_id,
            run_id=run.id,
            steps_executed=run.steps_executed,
            error=run.error,
        )
        await self._notify("on_run_finished", run)
        logger.info("[Scheduler] run=%s %s", run.id, run.status.value)

    async def _fail_invariant(self, run_id: str, exc: EngineInvariantError) -> Optional[WorkflowRun]:
        """Force a run to Failed after an invariant violation and raise an alert."""
        logger.error("[Scheduler] invariant violation on run=%s: %s", run_id, exc)
        run = await self._runs.load(run_id)
        await self._audit.record(
            AuditEntryType.INVARIANT_VIOLATION,
            workflow_id=run.workflow_id if run else None,
            run_id=run_id,
            error=str(exc),
        )
        await self._notify("on_alert", exc, {"run_id": run_id})
        if run is None or run.is_terminal:
            return run

        failed = run.model_copy(update={
            "status": RunStatus.FAILED,
            "scheduled_resume_at": None,
            "error": str(exc),
            "completed_at": self._clock(),
        })
        stored = await self._runs.compare_and_swap(failed, run.version)
        if stored is None:
            logger.critical("[Scheduler] could not force run=%s to failed", run_id)
            return await self._runs.load(run_id)
        await self._after_transition(stored)
        return stored

    # ── Waiting runs ──────────────────────────────────────────────────────────

    async def resume_due(self, now: Optional[datetime] = None) -> list[str]:
        """Move Waiting runs whose resume time has passed back to Running and enqueue them."""
        now = now or self._clock()
        resumed: list[str] = []
        for run in await self._runs.list_due_waiting(now):
            stored = await self._runs.compare_and_swap(
                transition(run, RunStatus.RUNNING), run.version
            )
            if stored is None:
                logger.debug("[Scheduler] run=%s changed before resume; skipping", run.id)
                continue
            await self._audit.record(
                AuditEntryType.RUN_RESUMED,
                workflow_id=run.workflow_id,
                run_id=run.id,
                step_index=run.cursor,
                scheduled_resume_at=run.scheduled_resume_at.isoformat(),
            )
            await self.enqueue(run.id)
            resumed.append(run.id)
        if resumed:
            logger.info("[Scheduler] resumed %d waiting run(s)", len(resumed))
        return resumed

    async def recover_stale(self, now: Optional[datetime] = None) -> list[str]:
        """Re-enqueue Running runs nobody has written for ``run_lease_seconds``.

        Their queue entry was lost (a crash between commit and the next step,
        or an enqueue that never reached the broker).  The run is touched with
        compare-and-swap first, so two engines ticking at once recover it only
        once and it stays leased until the lease expires again.  Re-executing
        the current step reuses its idempotency keys.
        """
        now = now or self._clock()
        cutoff = now - timedelta(seconds=self._config.run_lease_seconds)
        recovered: list[str] = []
        for run in await self._runs.list_stale_running(cutoff):
            stored = await self._runs.compare_and_swap(
                transition(run, RunStatus.RUNNING), run.version
            )
            if stored is None:
                continue
            await self._audit.record(
                AuditEntryType.RUN_RESUMED,
                workflow_id=run.workflow_id,
                run_id=run.id,
                step_index=run.cursor,
                reason="lease_expired",
                last_written_at=run.updated_at.isoformat(),
            )
            await self.enqueue(run.id)
            recovered.append(run.id)
        if recovered:
            logger.warning("[Scheduler] re-enqueued %d stale running run(s)", len(recovered))
        return recovered

    # ── Cancellation ──────────────────────────────────────────────────────────

    async def cancel(self, run_id: str, reason: str = "") -> WorkflowRun:
        """Move a non-terminal run to Cancelled.

        A step already in flight finishes, but its result is only audited.

        Raises:
            RunNotFound: no such run.
            RunStateError: the run already finished.
        """
        for _ in range(self._config.max_cas_retries + 1):
            run = await self._runs.load(run_id)
            if run is None:
                raise RunNotFound(f"Run '{run_id}' not found.", run_id=run_id)
            if run.is_terminal:
                raise RunStateError(
                    f"Run '{run_id}' is already {run.status.value}.", run_id=run_id
                )
            cancelled = transition(
                run, RunStatus.CANCELLED,
                completed_at=self._clock(),
                error=reason or None,
            )
            stored = await self._runs.compare_and_swap(cancelled, run.version)
            if stored is not None:
                await self._after_transition(stored)
                return stored
        raise EngineInvariantError(
            f"Could not cancel run '{run_id}': repeated version conflicts", run_id=run_id
        )

    # ── Callbacks ─────────────────────────────────────────────────────────────

    async def _notify(self, hook: str, *args: Any, **kwargs: Any) -> None:
        for cb in self._callbacks:
            fn = getattr(cb, hook, None)
            if fn is None:
                continue
            try:
                result = fn(*args, **kwargs)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Callback %s.%s raised", type(cb).__name__, hook)
