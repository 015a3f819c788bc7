"""AutomationEngine — the facade that wires matching, scheduling and execution.

Responsibilities:
- Receive events (directly or from an EventBus) and create runs for matches
- Periodic tick: date sweep, recovery of stale running runs, resumption of
  due waiting runs
- Cancellation and run/audit queries for the API and CLI
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Optional

from cadence.config import CadenceConfig
from cadence.core.audit import AuditLog
from cadence.core.executor import ActionExecutor
from cadence.core.run_store import RunStore
from cadence.core.scheduler import ExecutionScheduler
from cadence.exceptions import RunNotFound
from cadence.services.base import Collaborators
from cadence.triggers.date_sweep import DateSweep
from cadence.triggers.event_bus import EventBus
from cadence.triggers.matcher import TriggerMatcher
from cadence.types import (
    AuditEntry,
    AuditQuery,
    Event,
    RunQuery,
    RunStatus,
    TickReport,
    TriggerType,
    WorkflowRun,
    utcnow,
)
from cadence.workflows.manager import WorkflowManager

logger = logging.getLogger(__name__)


class AutomationEngine:
    """Entry point for events, ticks and run management."""

    def __init__(
        self,
        workflows: WorkflowManager,
        run_store: RunStore,
        audit: AuditLog,
        scheduler: ExecutionScheduler,
        matcher: Optional[TriggerMatcher] = None,
        sweep: Optional[DateSweep] = None,
        config: Optional[CadenceConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.workflows = workflows
        self.runs = run_store
        self.audit = audit
        self.scheduler = scheduler
        self.matcher = matcher or TriggerMatcher()
        self.sweep = sweep
        self._config = config or CadenceConfig()
        self._clock = clock
        self._tick_task: Optional[asyncio.Task] = None

    @classmethod
    def build(
        cls,
        collaborators: Collaborators,
        config: Optional[CadenceConfig] = None,
        repository: Any = None,
        callbacks: Optional[list] = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable = asyncio.sleep,
        enqueue: Optional[Callable] = None,
    ) -> "AutomationEngine":
        """Wire a complete engine.  With *repository* None everything lives in memory."""
        config = config or CadenceConfig()
        workflows = WorkflowManager(repository=repository, config=config)
        run_store = RunStore(repository=repository, clock=clock)
        audit = AuditLog(repository=repository)
        executor = ActionExecutor(collaborators, config=config, sleep=sleep, clock=clock)
        scheduler = ExecutionScheduler(
            run_store,
            audit,
            executor,
            workflows=workflows,
            config=config,
            callbacks=callbacks,
            clock=clock,
            enqueue=enqueue,
        )
        return cls(
            workflows,
            run_store,
            audit,
            scheduler,
            sweep=DateSweep(collaborators.entities),
            config=config,
            clock=clock,
        )

    # ── Events ────────────────────────────────────────────────────────────────

    def attach(self, bus: EventBus) -> None:
        """Subscribe ``on_event`` to every event category on *bus*."""
        bus.subscribe_all(self.on_event)

    async def on_event(self, event: Event) -> list[str]:
        """Match *event* against active workflows and create a run per match.

        When no worker pool is running, the created runs are driven inline
        until they finish or park.

        Returns:
            Ids of the runs created (replayed events create none).
        """
        created = await self._create_runs(event)
        if not self.scheduler.running:
            await self.scheduler.run_pending()
        return created

    async def _create_runs(self, event: Event) -> list[str]:
        candidates = await self.workflows.list(
            active_only=True, trigger_type=TriggerType(event.category)
        )
        by_id = {wf.id: wf for wf in candidates}
        created: list[str] = []
        for match in self.matcher.match(event, candidates):
            run_id = await self.scheduler.on_match(match, by_id[match.workflow_id])
            if run_id is not None:
                created.append(run_id)
        return created

    # ── Tick ──────────────────────────────────────────────────────────────────

    async def tick(self, now: Optional[datetime] = None) -> TickReport:
        """Run the date sweep, re-enqueue stale running runs and resume due waiting runs."""
        now = now or self._clock()
        report = TickReport(ran_at=now)

        if self.sweep is not None:
            date_workflows = await self.workflows.list(
                active_only=True, trigger_type=TriggerType.DATE_BASED
            )
            if date_workflows:
                events = await self.sweep.sweep(date_workflows, now)
                report.events_emitted = len(events)
                for event in events:
                    report.runs_created.extend(await self._create_runs(event))

        report.runs_recovered = await self.scheduler.recover_stale(now)
        report.runs_resumed = await self.scheduler.resume_due(now)
        if not self.scheduler.running:
            await self.scheduler.run_pending()

        logger.info(
            "[Engine] tick at %s: %d sweep events, %d runs created, %d recovered, %d resumed",
            now.isoformat(), report.events_emitted, len(report.runs_created),
            len(report.runs_recovered), len(report.runs_resumed),
        )
        return report

    # ── Runs ──────────────────────────────────────────────────────────────────

    async def cancel(self, run_id: str, reason: str = "") -> WorkflowRun:
        """Cancel a run.  Raises RunNotFound / RunStateError."""
        return await self.scheduler.cancel(run_id, reason=reason)

    async def get_run(self, run_id: str) -> WorkflowRun:
        run = await self.runs.load(run_id)
        if run is None:
            raise RunNotFound(f"Run '{run_id}' not found.", run_id=run_id)
        return run

    async def list_runs(
        self,
        workflow_id: Optional[str] = None,
        status_filter: Optional[list[RunStatus]] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[WorkflowRun]:
        return await self.runs.list_runs(RunQuery(
            workflow_id=workflow_id,
            statuses=status_filter or None,
            limit=limit,
            offset=offset,
        ))

    async def query_audit(self, filters: Optional[AuditQuery] = None) -> list[AuditEntry]:
        return await self.audit.query(filters)

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def start(self, concurrency: Optional[int] = None, tick: bool = True) -> None:
        """Start the worker pool and, optionally, the periodic tick loop."""
        await self.scheduler.start(concurrency)
        if tick and self._tick_task is None:
            self._tick_task = asyncio.create_task(self._tick_loop(), name="cadence-tick")
        logger.info("AutomationEngine started")

    async def stop(self) -> None:
        if self._tick_task is not None:
            self._tick_task.cancel()
            try:
                await self._tick_task
            except asyncio.CancelledError:
                pass
            self._tick_task = None
        await self.scheduler.stop()
        logger.info("AutomationEngine stopped")

    async def _tick_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.tick_interval_seconds)
            try:
                await self.tick()
            except Exception:
                logger.exception("AutomationEngine tick raised unexpectedly")
