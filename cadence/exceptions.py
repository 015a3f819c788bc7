"""Typed exception hierarchy. Every error CADENCE can raise."""


class CadenceError(Exception):
    """Base exception for all CADENCE errors."""
    def __init__(self, message: str, details: dict = None):
        super().__init__(message)
        self.details = details or {}


# ── Workflow definitions ─────────────────────────────────────────────────────


class WorkflowError(CadenceError):
    """Base exception for all workflow-definition errors."""
    pass


class WorkflowNotFound(WorkflowError):
    """Requested workflow does not exist."""
    def __init__(self, message: str, workflow_id: str = "", **kwargs):
        super().__init__(message, **kwargs)
        self.workflow_id = workflow_id


class WorkflowValidationError(WorkflowError):
    """Trigger or action config is malformed. Raised at save time, never at runtime."""
    def __init__(self, message: str, violations: list = None, **kwargs):
        super().__init__(message, **kwargs)
        self.violations = violations or []


# ── Step execution ───────────────────────────────────────────────────────────


class ExecutionError(CadenceError):
    """A step could not be executed."""
    def __init__(self, message: str, action_type: str = "", step_index: int = -1, **kwargs):
        super().__init__(message, **kwargs)
        self.action_type = action_type
        self.step_index = step_index


class TransientExecutionError(ExecutionError):
    """Retryable failure (service unavailable, timeout, network)."""
    pass


class PermanentExecutionError(ExecutionError):
    """Non-retryable failure: disallowed field, unresolvable variable, unknown action."""
    pass


class StepLimitExceeded(PermanentExecutionError):
    """A run executed more steps than the configured ceiling."""
    def __init__(self, message: str, limit: int = 0, **kwargs):
        super().__init__(message, **kwargs)
        self.limit = limit


# ── Runs ─────────────────────────────────────────────────────────────────────


class RunError(CadenceError):
    """Base exception for run-level errors."""
    def __init__(self, message: str, run_id: str = "", **kwargs):
        super().__init__(message, **kwargs)
        self.run_id = run_id


class RunNotFound(RunError):
    """Requested run does not exist."""
    pass


class RunStateError(RunError):
    """Operation not allowed in the run's current status (e.g. cancelling a finished run)."""
    pass


class EngineInvariantError(RunError):
    """Corrupted run state, illegal transition, or version conflicts beyond the retry budget."""
    pass


# ── External collaborators ───────────────────────────────────────────────────


class ServiceError(CadenceError):
    """An external collaborator call failed."""
    def __init__(self, message: str, service: str = "", status_code: int = None, **kwargs):
        super().__init__(message, **kwargs)
        self.service = service
        self.status_code = status_code


class TransientServiceError(ServiceError):
    """Collaborator unavailable or overloaded; the call may be retried."""
    pass


class PermanentServiceError(ServiceError):
    """Collaborator rejected the request; retrying will not help."""
    pass
