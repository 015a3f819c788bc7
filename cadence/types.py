"""All shared types, enums, and type aliases. Everything imports from here."""

from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union
from datetime import datetime, timezone
from pydantic import BaseModel, Field, model_validator
import uuid


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


# ── Enums ──────────────────────────────────────────────────────────────

class TriggerType(str, Enum):
    STATUS_CHANGE = "status_change"
    DATE_BASED = "date_based"           # not event-driven; produced by the sweep
    SCORE_THRESHOLD = "score_threshold"
    INTERACTION_ADDED = "interaction_added"
    TASK_COMPLETED = "task_completed"

class ActionType(str, Enum):
    CREATE_TASK = "create_task"
    SEND_EMAIL = "send_email"
    UPDATE_PROSPECT = "update_prospect"
    WAIT_DAYS = "wait_days"
    CREATE_INTERACTION = "create_interaction"

class RunStatus(str, Enum):
    PENDING = "pending"         # only while the run is being created
    RUNNING = "running"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

TERMINAL_STATUSES = frozenset({RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED})

class StepOutcome(str, Enum):
    SUCCESS = "success"
    SUSPEND = "suspend"                         # wait step: park the run
    TRANSIENT_FAILURE = "transient_failure"     # retries exhausted
    PERMANENT_FAILURE = "permanent_failure"

class AuditEntryType(str, Enum):
    TRIGGER_MATCHED = "trigger_matched"
    RUN_CREATED = "run_created"
    STEP_EXECUTED = "step_executed"
    RUN_WAITING = "run_waiting"
    RUN_RESUMED = "run_resumed"
    RUN_COMPLETED = "run_completed"
    RUN_FAILED = "run_failed"
    RUN_CANCELLED = "run_cancelled"
    INVARIANT_VIOLATION = "invariant_violation"


# ── Trigger configs (one per TriggerType) ──────────────────────────────

class StatusChangeConfig(BaseModel):
    to_status: str = Field(min_length=1)
    from_status: Optional[str] = None   # None/"" = any previous status

class ScoreThresholdConfig(BaseModel):
    threshold: float
    score_field: str = "prospect_score"

class InteractionAddedConfig(BaseModel):
    interaction_type: str = ""          # "" or "any" = every interaction

class TaskCompletedConfig(BaseModel):
    task_type: str = ""                 # "" or "any" = every task

class DateBasedConfig(BaseModel):
    date_field: str = Field(min_length=1)
    entity_type: str = "prospect"
    offset_days: int = 0                # fire N days after the date has passed

TriggerConfig = Union[
    StatusChangeConfig,
    ScoreThresholdConfig,
    InteractionAddedConfig,
    TaskCompletedConfig,
    DateBasedConfig,
]

TRIGGER_CONFIG_MODELS: dict[TriggerType, type[BaseModel]] = {
    TriggerType.STATUS_CHANGE: StatusChangeConfig,
    TriggerType.SCORE_THRESHOLD: ScoreThresholdConfig,
    TriggerType.INTERACTION_ADDED: InteractionAddedConfig,
    TriggerType.TASK_COMPLETED: TaskCompletedConfig,
    TriggerType.DATE_BASED: DateBasedConfig,
}


# ── Action steps (tagged union on action_type) ─────────────────────────

class CreateTaskConfig(BaseModel):
    title: str = Field(min_length=1)                # template
    description: str = ""                           # template
    task_type: str = ""
    priority: str = "medium"
    due_in_days: Optional[int] = Field(default=None, ge=0)

class SendEmailConfig(BaseModel):
    subject: str = Field(min_length=1)              # template
    body: str = ""                                  # template
    to: str = "{{email}}"                           # template, must resolve

class UpdateProspectConfig(BaseModel):
    field: str = Field(min_length=1)
    value: Any = None                               # templated when a string

class WaitDaysConfig(BaseModel):
    days: float = Field(gt=0)

class CreateInteractionConfig(BaseModel):
    interaction_type: str = Field(min_length=1)
    subject: str = ""                               # template
    notes: str = ""                                 # template


class CreateTaskStep(BaseModel):
    action_type: Literal["create_task"] = "create_task"
    action_config: CreateTaskConfig

class SendEmailStep(BaseModel):
    action_type: Literal["send_email"] = "send_email"
    action_config: SendEmailConfig

class UpdateProspectStep(BaseModel):
    action_type: Literal["update_prospect"] = "update_prospect"
    action_config: UpdateProspectConfig

class WaitDaysStep(BaseModel):
    action_type: Literal["wait_days"] = "wait_days"
    action_config: WaitDaysConfig

class CreateInteractionStep(BaseModel):
    action_type: Literal["create_interaction"] = "create_interaction"
    action_config: CreateInteractionConfig

WorkflowStep = Annotated[
    Union[CreateTaskStep, SendEmailStep, UpdateProspectStep, WaitDaysStep, CreateInteractionStep],
    Field(discriminator="action_type"),
]


# ── Core Data Shapes ───────────────────────────────────────────────────

class Workflow(BaseModel):
    """Operator-defined automation: one trigger plus an ordered action sequence."""
    id: str = Field(default_factory=_new_id)
    name: str = Field(min_length=1)
    description: str = ""
    active: bool = True
    trigger_type: TriggerType
    trigger_config: TriggerConfig
    steps: list[WorkflowStep] = Field(default_factory=list)
    execution_count: int = 0                        # +1 per run created, never per step
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="before")
    @classmethod
    def _parse_trigger_config(cls, data: Any) -> Any:
        # trigger_config has no tag of its own; trigger_type selects the model
        if not isinstance(data, dict):
            return data
        raw = data.get("trigger_config")
        try:
            trigger_type = TriggerType(data.get("trigger_type"))
        except ValueError:
            return data
        model = TRIGGER_CONFIG_MODELS[trigger_type]
        if raw is None:
            raw = {}
        if isinstance(raw, BaseModel) and not isinstance(raw, model):
            raw = raw.model_dump()
        if isinstance(raw, dict):
            data = {**data, "trigger_config": model.model_validate(raw)}
        return data

    @model_validator(mode="after")
    def _check_trigger_config_type(self) -> "Workflow":
        expected = TRIGGER_CONFIG_MODELS[self.trigger_type]
        if not isinstance(self.trigger_config, expected):
            raise ValueError(
                f"trigger_config for {self.trigger_type.value!r} must be {expected.__name__}"
            )
        return self


class Event(BaseModel):
    """A domain change published by an external service."""
    id: str = Field(default_factory=_new_id)
    category: TriggerType
    entity_type: str = "prospect"
    entity_id: str
    payload: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=utcnow)


class Match(BaseModel):
    """One (workflow, event) pair whose trigger condition held."""
    workflow_id: str
    event: Event


class StepResult(BaseModel):
    step_index: int
    action_type: str
    outcome: StepOutcome
    error: Optional[str] = None
    attempt_count: int = 1
    output: dict[str, Any] = Field(default_factory=dict)    # e.g. {"task_id": "..."}
    completed_at: datetime = Field(default_factory=utcnow)


class StepExecution(BaseModel):
    """What the ActionExecutor hands back to the scheduler for one step."""
    outcome: StepOutcome
    error: Optional[str] = None
    attempt_count: int = 1
    output: dict[str, Any] = Field(default_factory=dict)
    resume_at: Optional[datetime] = None                    # set on SUSPEND only


class WorkflowRun(BaseModel):
    """One live execution of a workflow, tracked through its own state machine."""
    id: str = Field(default_factory=_new_id)
    workflow_id: str
    workflow_name: str = ""
    triggering_event_id: str
    trigger_payload: dict[str, Any] = Field(default_factory=dict)
    subject_entity_type: str
    subject_entity_id: str
    steps_snapshot: list[WorkflowStep]                      # frozen at trigger time
    cursor: int = 0                                         # index of next step; only increases
    status: RunStatus = RunStatus.PENDING
    scheduled_resume_at: Optional[datetime] = None          # set only while WAITING
    step_results: list[StepResult] = Field(default_factory=list)
    steps_executed: int = 0
    version: int = 0                                        # optimistic concurrency counter
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def current_step(self):
        if self.cursor >= len(self.steps_snapshot):
            return None
        return self.steps_snapshot[self.cursor]


class RunQuery(BaseModel):
    """Filter for RunStore.list_runs / list_terminal."""
    workflow_id: Optional[str] = None
    statuses: Optional[list[RunStatus]] = None
    subject_entity_id: Optional[str] = None
    completed_after: Optional[datetime] = None
    limit: int = Field(default=100, ge=1, le=1000)
    offset: int = Field(default=0, ge=0)


class AuditEntry(BaseModel):
    """Append-only record of something the engine did."""
    id: str = Field(default_factory=_new_id)
    entry_type: AuditEntryType
    workflow_id: Optional[str] = None
    run_id: Optional[str] = None
    event_id: Optional[str] = None
    step_index: Optional[int] = None
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class AuditQuery(BaseModel):
    workflow_id: Optional[str] = None
    run_id: Optional[str] = None
    event_id: Optional[str] = None
    entry_types: Optional[list[AuditEntryType]] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    limit: int = Field(default=100, ge=1, le=1000)
    offset: int = Field(default=0, ge=0)


class TickReport(BaseModel):
    """What one Engine.tick() did."""
    ran_at: datetime = Field(default_factory=utcnow)
    events_emitted: int = 0
    runs_created: list[str] = Field(default_factory=list)
    runs_resumed: list[str] = Field(default_factory=list)
    runs_recovered: list[str] = Field(default_factory=list)
