"""TriggerMatcher — decides which workflows an event fires.

One event yields zero or one Match per candidate workflow.  Matching is pure
apart from the score tracker, which remembers the last score observed per
(workflow, entity) so that threshold triggers only fire on an upward
crossing.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Optional

from cadence.types import (
    DateBasedConfig,
    Event,
    InteractionAddedConfig,
    Match,
    ScoreThresholdConfig,
    StatusChangeConfig,
    TaskCompletedConfig,
    TriggerType,
    Workflow,
)

logger = logging.getLogger(__name__)

_WILDCARDS = {"", "any"}


def _is_wildcard(value: Optional[str]) -> bool:
    return value is None or value.strip().lower() in _WILDCARDS


def _as_score(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class ScoreTracker:
    """Last observed score per (workflow_id, entity_id)."""

    def __init__(self) -> None:
        self._scores: dict[tuple[str, str], float] = {}

    def get(self, workflow_id: str, entity_id: str) -> Optional[float]:
        return self._scores.get((workflow_id, entity_id))

    def observe(self, workflow_id: str, entity_id: str, score: float) -> None:
        self._scores[(workflow_id, entity_id)] = score

    def forget_workflow(self, workflow_id: str) -> None:
        for key in [k for k in self._scores if k[0] == workflow_id]:
            del self._scores[key]

    def workflow_ids(self) -> set[str]:
        return {workflow_id for workflow_id, _ in self._scores}

    def __len__(self) -> int:
        return len(self._scores)


class TriggerMatcher:
    """Evaluates one event against candidate workflows."""

    def __init__(self, tracker: Optional[ScoreTracker] = None) -> None:
        self.tracker = tracker or ScoreTracker()
        # (threshold, score_field) each tracked workflow was last evaluated with
        self._score_configs: dict[str, tuple[float, str]] = {}
        self._rules = {
            TriggerType.STATUS_CHANGE: self._status_change,
            TriggerType.SCORE_THRESHOLD: self._score_threshold,
            TriggerType.INTERACTION_ADDED: self._interaction_added,
            TriggerType.TASK_COMPLETED: self._task_completed,
            TriggerType.DATE_BASED: self._date_based,
        }

    def match(self, event: Event, candidates: Iterable[Workflow]) -> list[Match]:
        """Return one Match for every active candidate whose trigger holds for *event*.

        Inactive workflows and workflows of another trigger type are skipped.
        *candidates* is expected to hold every active workflow of the event's
        category: score history of threshold workflows missing from it
        (deleted or deactivated) is forgotten.
        """
        category = TriggerType(event.category)
        candidates = list(candidates)
        rule = self._rules[category]
        matches: list[Match] = []
        for workflow in candidates:
            if not workflow.active or TriggerType(workflow.trigger_type) != category:
                continue
            if rule(workflow, event):
                matches.append(Match(workflow_id=workflow.id, event=event))
        if category == TriggerType.SCORE_THRESHOLD:
            self._forget_missing({wf.id for wf in candidates if wf.active})
        if matches:
            logger.debug(
                "[Matcher] event=%s category=%s matched %d workflow(s)",
                event.id, category.value, len(matches),
            )
        return matches

    def _forget_missing(self, live_ids: set[str]) -> None:
        for workflow_id in self.tracker.workflow_ids() - live_ids:
            self.tracker.forget_workflow(workflow_id)
        for workflow_id in set(self._score_configs) - live_ids:
            del self._score_configs[workflow_id]

    # ── Rules ─────────────────────────────────────────────────────────────────

    def _status_change(self, workflow: Workflow, event: Event) -> bool:
        cfg: StatusChangeConfig = workflow.trigger_config
        if event.payload.get("new_status") != cfg.to_status:
            return False
        if cfg.from_status:
            return event.payload.get("previous_status") == cfg.from_status
        return True

    def _score_threshold(self, workflow: Workflow, event: Event) -> bool:
        cfg: ScoreThresholdConfig = workflow.trigger_config
        signature = (cfg.threshold, cfg.score_field)
        if self._score_configs.get(workflow.id, signature) != signature:
            # an edited threshold starts from a clean history
            self.tracker.forget_workflow(workflow.id)
        self._score_configs[workflow.id] = signature

        field = event.payload.get("score_field")
        if field is not None and field != cfg.score_field:
            return False
        new_score = _as_score(event.payload.get("new_score"))
        if new_score is None:
            return False

        previous = _as_score(event.payload.get("previous_score"))
        if previous is None:
            previous = self.tracker.get(workflow.id, event.entity_id)
        self.tracker.observe(workflow.id, event.entity_id, new_score)

        if previous is None:
            return False
        return previous < cfg.threshold <= new_score

    def _interaction_added(self, workflow: Workflow, event: Event) -> bool:
        cfg: InteractionAddedConfig = workflow.trigger_config
        if _is_wildcard(cfg.interaction_type):
            return True
        return event.payload.get("type") == cfg.interaction_type

    def _task_completed(self, workflow: Workflow, event: Event) -> bool:
        cfg: TaskCompletedConfig = workflow.trigger_config
        if _is_wildcard(cfg.task_type):
            return True
        return event.payload.get("type") == cfg.task_type

    def _date_based(self, workflow: Workflow, event: Event) -> bool:
        cfg: DateBasedConfig = workflow.trigger_config
        return (
            event.payload.get("date_field") == cfg.date_field
            and event.entity_type == cfg.entity_type
            and event.payload.get("offset_days", 0) == cfg.offset_days
        )
