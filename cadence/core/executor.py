"""Executes one workflow step: render → call collaborator → classify outcome.

The last stop before an external side effect happens.  Transient failures
are retried here with jittered exponential backoff and only surface to the
scheduler once the attempt budget is spent.
"""

from __future__ import annotations

import asyncio
import logging
import random
from datetime import timedelta
from typing import Any, Awaitable, Callable, Optional

from cadence.config import CadenceConfig
from cadence.core.templates import render, unresolved_tokens
from cadence.exceptions import (
    PermanentExecutionError,
    PermanentServiceError,
    TransientExecutionError,
    TransientServiceError,
)
from cadence.services.base import Collaborators
from cadence.types import ActionType, StepExecution, StepOutcome, WorkflowRun, utcnow

logger = logging.getLogger(__name__)


def idempotency_key(run_id: str, step_index: int, attempt: int) -> str:
    """Key passed to collaborators so a replayed call is a no-op on their side."""
    return f"{run_id}:{step_index}:{attempt}"


class ActionExecutor:
    """Dispatches a step to the handler for its ``action_type``."""

    def __init__(
        self,
        collaborators: Collaborators,
        config: Optional[CadenceConfig] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
        clock=utcnow,
    ) -> None:
        """
        Args:
            collaborators: Task / email / entity / interaction services.
            config: CadenceConfig; supplies retry policy, timeouts and the
                    mutable-field allow-list.
            sleep: Awaitable used between retries (tests pass a no-op).
            rng: Random source for backoff jitter.
            clock: Returns the current aware UTC datetime.
        """
        self._services = collaborators
        self._config = config or CadenceConfig()
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._clock = clock
        self._handlers = {
            ActionType.CREATE_TASK: self._create_task,
            ActionType.SEND_EMAIL: self._send_email,
            ActionType.UPDATE_PROSPECT: self._update_prospect,
            ActionType.CREATE_INTERACTION: self._create_interaction,
        }

    # ── Public API ────────────────────────────────────────────────────────────

    async def execute(self, run: WorkflowRun, step) -> StepExecution:
        """Execute *step* (normally ``run.steps_snapshot[run.cursor]``).

        Never raises for step-level problems; the outcome says what happened.
        """
        step_index = run.cursor
        try:
            action_type = ActionType(step.action_type)
        except ValueError:
            return StepExecution(
                outcome=StepOutcome.PERMANENT_FAILURE,
                error=f"Unknown action_type {step.action_type!r}",
            )

        if action_type == ActionType.WAIT_DAYS:
            resume_at = self._clock() + timedelta(days=step.action_config.days)
            return StepExecution(outcome=StepOutcome.SUSPEND, resume_at=resume_at, attempt_count=1)

        handler = self._handlers[action_type]
        max_attempts = max(1, self._config.retry_max_attempts)
        attempt = 0
        while True:
            attempt += 1
            key = idempotency_key(run.id, step_index, attempt)
            try:
                output = await handler(run, step, key)
                return StepExecution(
                    outcome=StepOutcome.SUCCESS,
                    attempt_count=attempt,
                    output=output or {},
                )
            except TransientExecutionError as exc:
                if attempt >= max_attempts:
                    logger.warning(
                        "[Executor] %s run=%s step=%d gave up after %d attempts: %s",
                        action_type.value, run.id, step_index, attempt, exc,
                    )
                    return StepExecution(
                        outcome=StepOutcome.TRANSIENT_FAILURE,
                        error=str(exc),
                        attempt_count=attempt,
                    )
                delay = self.backoff_delay(attempt)
                logger.info(
                    "[Executor] %s run=%s step=%d attempt %d failed (%s); retrying in %.2fs",
                    action_type.value, run.id, step_index, attempt, exc, delay,
                )
                await self._sleep(delay)
            except PermanentExecutionError as exc:
                logger.warning(
                    "[Executor] %s run=%s step=%d failed permanently: %s",
                    action_type.value, run.id, step_index, exc,
                )
                return StepExecution(
                    outcome=StepOutcome.PERMANENT_FAILURE,
                    error=str(exc),
                    attempt_count=attempt,
                )
            except Exception as exc:
                logger.error(
                    "[Executor] %s run=%s step=%d raised unexpectedly",
                    action_type.value, run.id, step_index, exc_info=True,
                )
                return StepExecution(
                    outcome=StepOutcome.PERMANENT_FAILURE,
                    error=f"Unexpected error: {exc}",
                    attempt_count=attempt,
                )

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number *attempt* + 1: base·factor^(attempt-1) ± jitter."""
        cfg = self._config
        base = cfg.retry_base_delay_seconds * (cfg.retry_backoff_factor ** (attempt - 1))
        jitter = cfg.retry_jitter
        return max(0.0, base * self._rng.uniform(1 - jitter, 1 + jitter))

    # ── Collaborator calls ────────────────────────────────────────────────────

    async def _call(self, action_type: ActionType, step_index: int, awaitable):
        """Await a collaborator call under the per-call timeout, mapping its errors."""
        try:
            return await asyncio.wait_for(awaitable, timeout=self._config.service_timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise TransientExecutionError(
                f"Service call timed out after {self._config.service_timeout_seconds}s",
                action_type=action_type.value,
                step_index=step_index,
            ) from exc
        except TransientServiceError as exc:
            raise TransientExecutionError(
                str(exc), action_type=action_type.value, step_index=step_index
            ) from exc
        except PermanentServiceError as exc:
            raise PermanentExecutionError(
                str(exc), action_type=action_type.value, step_index=step_index
            ) from exc

    async def _subject_context(self, run: WorkflowRun, action_type: ActionType) -> dict[str, Any]:
        """Template variables: trigger payload overlaid with the subject's current fields."""
        fields = await self._call(
            action_type,
            run.cursor,
            self._services.entities.get(run.subject_entity_type, run.subject_entity_id),
        )
        context: dict[str, Any] = {**run.trigger_payload, **(fields or {})}
        context.setdefault("entity_type", run.subject_entity_type)
        context.setdefault("entity_id", run.subject_entity_id)
        context.setdefault("workflow_name", run.workflow_name)
        return context

    # ── Handlers ──────────────────────────────────────────────────────────────

    async def _create_task(self, run: WorkflowRun, step, key: str) -> dict:
        cfg = step.action_config
        ctx = await self._subject_context(run, ActionType.CREATE_TASK)
        fields: dict[str, Any] = {
            "title": render(cfg.title, ctx),
            "description": render(cfg.description, ctx),
            "task_type": cfg.task_type,
            "priority": cfg.priority,
            "entity_type": run.subject_entity_type,
            "entity_id": run.subject_entity_id,
            "workflow_id": run.workflow_id,
            "run_id": run.id,
        }
        if cfg.due_in_days is not None:
            fields["due_date"] = (self._clock() + timedelta(days=cfg.due_in_days)).date().isoformat()
        task_id = await self._call(
            ActionType.CREATE_TASK, run.cursor, self._services.tasks.create(fields, key)
        )
        return {"task_id": task_id}

    async def _send_email(self, run: WorkflowRun, step, key: str) -> dict:
        cfg = step.action_config
        ctx = await self._subject_context(run, ActionType.SEND_EMAIL)
        to = render(cfg.to, ctx).strip()
        if not to or unresolved_tokens(to):
            raise PermanentExecutionError(
                f"Recipient template {cfg.to!r} did not resolve to an address",
                action_type=ActionType.SEND_EMAIL.value,
                step_index=run.cursor,
            )
        subject = render(cfg.subject, ctx)
        body = render(cfg.body, ctx)
        await self._call(
            ActionType.SEND_EMAIL, run.cursor, self._services.email.send(to, subject, body, key)
        )
        return {"to": to, "subject": subject}

    async def _update_prospect(self, run: WorkflowRun, step, key: str) -> dict:
        cfg = step.action_config
        allowed = self._config.mutable_fields.get(run.subject_entity_type, [])
        if cfg.field not in allowed:
            raise PermanentExecutionError(
                f"Field {cfg.field!r} is not mutable on {run.subject_entity_type!r}",
                action_type=ActionType.UPDATE_PROSPECT.value,
                step_index=run.cursor,
            )
        value = cfg.value
        if isinstance(value, str):
            ctx = await self._subject_context(run, ActionType.UPDATE_PROSPECT)
            value = render(value, ctx)
        await self._call(
            ActionType.UPDATE_PROSPECT,
            run.cursor,
            self._services.entities.update_field(
                run.subject_entity_type, run.subject_entity_id, cfg.field, value, key
            ),
        )
        return {"field": cfg.field, "value": value}

    async def _create_interaction(self, run: WorkflowRun, step, key: str) -> dict:
        cfg = step.action_config
        ctx = await self._subject_context(run, ActionType.CREATE_INTERACTION)
        fields = {
            "interaction_type": cfg.interaction_type,
            "subject": render(cfg.subject, ctx),
            "notes": render(cfg.notes, ctx),
            "entity_type": run.subject_entity_type,
            "entity_id": run.subject_entity_id,
            "workflow_id": run.workflow_id,
            "run_id": run.id,
            "occurred_at": self._clock().isoformat(),
        }
        interaction_id = await self._call(
            ActionType.CREATE_INTERACTION, run.cursor, self._services.interactions.log(fields, key)
        )
        return {"interaction_id": interaction_id}
