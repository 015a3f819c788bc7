"""
WorkflowValidator — save-time checks for Workflow definitions.

Shape errors (unknown action types, missing fields, wrong trigger config)
are already rejected by the pydantic models; this validator covers the
rules that need configuration or cross-field knowledge.  Warnings (soft
issues) are returned with a "WARNING:" prefix so callers can choose to treat
them differently from hard errors.
"""

from __future__ import annotations

from typing import Optional

from cadence.core.templates import count_tokens, referenced_tokens
from cadence.types import (
    ActionType,
    DateBasedConfig,
    StatusChangeConfig,
    TriggerType,
    Workflow,
)


def subject_entity_type(workflow: Workflow) -> str:
    """Entity type a workflow's runs act on, as far as save time can tell."""
    if TriggerType(workflow.trigger_type) == TriggerType.DATE_BASED:
        cfg: DateBasedConfig = workflow.trigger_config
        return cfg.entity_type
    return "prospect"


def _template_fields(step) -> dict[str, str]:
    action = ActionType(step.action_type)
    cfg = step.action_config
    if action == ActionType.CREATE_TASK:
        return {"title": cfg.title, "description": cfg.description}
    if action == ActionType.SEND_EMAIL:
        return {"to": cfg.to, "subject": cfg.subject, "body": cfg.body}
    if action == ActionType.CREATE_INTERACTION:
        return {"subject": cfg.subject, "notes": cfg.notes}
    if action == ActionType.UPDATE_PROSPECT and isinstance(cfg.value, str):
        return {"value": cfg.value}
    return {}


class WorkflowValidator:
    """
    Validates a Workflow before it is stored.

    Usage::

        validator = WorkflowValidator()
        errors = validator.validate(workflow, max_steps=50, mutable_fields=config.mutable_fields)
        hard_errors = [e for e in errors if not e.startswith("WARNING:")]
        if hard_errors:
            raise WorkflowValidationError("Invalid workflow", violations=hard_errors)

    All checks are run even if earlier ones fail, so callers get the full
    error list in one shot.
    """

    def validate(
        self,
        workflow: Workflow,
        max_steps: int = 50,
        mutable_fields: Optional[dict[str, list[str]]] = None,
    ) -> list[str]:
        """
        Run all checks on a Workflow.

        Args:
            workflow:       The workflow to validate.
            max_steps:      Maximum allowed steps (override from config).
            mutable_fields: Per-entity-type allow-list for update_prospect;
                            the field check is skipped when None.

        Returns:
            List of error strings.  Empty list means the workflow is valid.
            Items prefixed "WARNING:" are soft warnings, not hard failures.
        """
        errors: list[str] = []
        steps = workflow.steps

        # ── Step count ────────────────────────────────────────────────────────
        if not steps:
            errors.append("Workflow has no steps.")
        if len(steps) > max_steps:
            errors.append(
                f"Workflow has {len(steps)} steps; maximum allowed is {max_steps}."
            )

        # ── Trigger config ────────────────────────────────────────────────────
        if TriggerType(workflow.trigger_type) == TriggerType.STATUS_CHANGE:
            cfg: StatusChangeConfig = workflow.trigger_config
            if cfg.from_status and cfg.from_status == cfg.to_status:
                errors.append(
                    f"status_change trigger from '{cfg.from_status}' to "
                    f"'{cfg.to_status}' can never fire."
                )

        # ── Per-step checks ───────────────────────────────────────────────────
        entity_type = subject_entity_type(workflow)
        for index, step in enumerate(steps):
            label = f"Step {index} ({step.action_type})"
            action = ActionType(step.action_type)

            if action == ActionType.UPDATE_PROSPECT and mutable_fields is not None:
                allowed = mutable_fields.get(entity_type, [])
                if step.action_config.field not in allowed:
                    errors.append(
                        f"{label}: field '{step.action_config.field}' is not mutable "
                        f"on '{entity_type}' (allowed: {', '.join(allowed) or 'none'})."
                    )

            if action == ActionType.SEND_EMAIL:
                to = step.action_config.to.strip()
                if not to:
                    errors.append(f"{label}: recipient 'to' is empty.")
                elif not referenced_tokens(to) and "@" not in to:
                    errors.append(
                        f"{label}: recipient '{to}' is neither an address nor a template."
                    )

            for name, text in _template_fields(step).items():
                if (text or "").count("{{") > count_tokens(text):
                    errors.append(
                        f"WARNING: {label}: '{name}' contains '{{{{' that is not a "
                        "valid {{identifier}} token and will be sent verbatim."
                    )

        if steps and ActionType(steps[-1].action_type) == ActionType.WAIT_DAYS:
            errors.append(
                "WARNING: Workflow ends with wait_days; the run only delays its own completion."
            )

        return errors

