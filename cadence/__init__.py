"""CADENCE — workflow automation for prospect and account follow-up.

Usage:
    from cadence import AutomationEngine, Event, TriggerType

    engine = AutomationEngine.build(collaborators)
    await engine.on_event(Event(category=TriggerType.STATUS_CHANGE, entity_id="p-1", payload={...}))
"""

from cadence.types import (
    Workflow, WorkflowRun, Event, Match, StepResult, StepExecution, AuditEntry,
    AuditQuery, RunQuery, TickReport, TriggerType, ActionType, RunStatus,
    StepOutcome, AuditEntryType,
)
from cadence.exceptions import (
    CadenceError, WorkflowNotFound, WorkflowValidationError, ExecutionError,
    TransientExecutionError, PermanentExecutionError, StepLimitExceeded,
    RunNotFound, RunStateError, EngineInvariantError, ServiceError,
)
from cadence.core.engine import AutomationEngine
from cadence.version import __version__

__all__ = [
    "Workflow", "WorkflowRun", "Event", "Match", "StepResult", "StepExecution",
    "AuditEntry", "AuditQuery", "RunQuery", "TickReport", "TriggerType",
    "ActionType", "RunStatus", "StepOutcome", "AuditEntryType",
    "CadenceError", "WorkflowNotFound", "WorkflowValidationError", "ExecutionError",
    "TransientExecutionError", "PermanentExecutionError", "StepLimitExceeded",
    "RunNotFound", "RunStateError", "EngineInvariantError", "ServiceError",
    "AutomationEngine",
    "__version__",
]
