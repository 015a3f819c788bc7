"""Structured JSON logging callback for run lifecycle events."""

import json
import logging
from datetime import datetime, timezone
from typing import Any

from cadence.callbacks.base import BaseCallback
from cadence.types import StepResult, WorkflowRun

logger = logging.getLogger("cadence.audit")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class LoggingCallback(BaseCallback):
    """Emits structured JSON log lines for every lifecycle event.

    Each log line is a self-contained JSON object with:
      - event: event type name
      - ts: ISO-8601 UTC timestamp
      - relevant fields depending on event

    Log level: INFO for normal events, WARNING for failed runs,
    CRITICAL for alerts.
    Logger name: cadence.audit (configure in your logging setup)
    """

    async def on_run_created(self, run: WorkflowRun, **kwargs: Any) -> None:
        logger.info(json.dumps({
            "event": "run_created",
            "ts": _now(),
            "run_id": run.id,
            "workflow_id": run.workflow_id,
            "event_id": run.triggering_event_id,
            "subject": f"{run.subject_entity_type}:{run.subject_entity_id}",
            "step_count": len(run.steps_snapshot),
        }))

    async def on_step_executed(
        self, run: WorkflowRun, result: StepResult, **kwargs: Any
    ) -> None:
        logger.info(json.dumps({
            "event": "step_executed",
            "ts": _now(),
            "run_id": run.id,
            "step_index": result.step_index,
            "action": result.action_type,
            "outcome": result.outcome.value,
            "attempts": result.attempt_count,
            "error": result.error,
        }))

    async def on_run_finished(self, run: WorkflowRun, **kwargs: Any) -> None:
        level = logging.WARNING if run.status.value == "failed" else logging.INFO
        logger.log(level, json.dumps({
            "event": "run_finished",
            "ts": _now(),
            "run_id": run.id,
            "workflow_id": run.workflow_id,
            "status": run.status.value,
            "steps_executed": run.steps_executed,
            "error": run.error,
        }))

    async def on_alert(
        self, error: Exception, context: dict[str, Any], **kwargs: Any
    ) -> None:
        logger.critical(json.dumps({
            "event": "alert",
            "ts": _now(),
            "error_type": type(error).__name__,
            "error": str(error),
            "context": {k: str(v)[:200] for k, v in context.items()},
        }))
