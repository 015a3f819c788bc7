"""Base callback protocol for CADENCE run lifecycle hooks.

Callbacks are called at key points in a run's life.
Implement this protocol to observe or instrument the engine without
modifying core logic.

Usage:
    class MyCallback(BaseCallback):
        async def on_run_finished(self, run, **kw):
            print(f"Run {run.id}: {run.status}")

    scheduler = ExecutionScheduler(..., callbacks=[MyCallback()])
"""

from typing import Any, Protocol, runtime_checkable

from cadence.types import StepResult, WorkflowRun


@runtime_checkable
class EngineCallback(Protocol):
    """Protocol defining hooks for run lifecycle events.

    All methods are async; the scheduler awaits each registered callback in
    order.  A callback that raises is logged and skipped.
    """

    async def on_run_created(self, run: WorkflowRun, **kwargs: Any) -> None:
        """Called once a run has been persisted and enqueued."""
        ...

    async def on_step_executed(
        self,
        run: WorkflowRun,
        result: StepResult,
        **kwargs: Any,
    ) -> None:
        """Called after every step attempt that was committed to the run."""
        ...

    async def on_run_finished(self, run: WorkflowRun, **kwargs: Any) -> None:
        """Called when a run reaches completed, failed or cancelled."""
        ...

    async def on_alert(
        self,
        error: Exception,
        context: dict[str, Any],
        **kwargs: Any,
    ) -> None:
        """Called on engine invariant violations that need an operator."""
        ...


class BaseCallback:
    """Concrete base with no-op implementations of all hooks.

    Subclass this instead of implementing the Protocol directly
    to avoid implementing every method.
    """

    async def on_run_created(self, run: WorkflowRun, **kwargs: Any) -> None:
        pass

    async def on_step_executed(
        self, run: WorkflowRun, result: StepResult, **kwargs: Any
    ) -> None:
        pass

    async def on_run_finished(self, run: WorkflowRun, **kwargs: Any) -> None:
        pass

    async def on_alert(
        self, error: Exception, context: dict[str, Any], **kwargs: Any
    ) -> None:
        pass
