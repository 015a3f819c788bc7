"""TriggerMatcher: per-trigger-type rules, wildcards and score crossings."""

import pytest

from cadence.triggers.matcher import ScoreTracker, TriggerMatcher
from cadence.types import Event, TriggerType

from conftest import make_workflow, status_event


def _score_event(new, previous=None, entity_id="p-1", field=None):
    payload = {"new_score": new}
    if previous is not None:
        payload["previous_score"] = previous
    if field is not None:
        payload["score_field"] = field
    return Event(category=TriggerType.SCORE_THRESHOLD, entity_id=entity_id, payload=payload)


def _score_workflow(threshold=80, field="prospect_score"):
    return make_workflow(
        name="Hot lead",
        trigger_type=TriggerType.SCORE_THRESHOLD,
        trigger_config={"threshold": threshold, "score_field": field},
    )


# ── status_change ─────────────────────────────────────────────────────────────

def test_status_change_matches_target_status():
    wf = make_workflow(trigger_config={"to_status": "Qualified"})
    matches = TriggerMatcher().match(status_event(new="Qualified"), [wf])
    assert [m.workflow_id for m in matches] == [wf.id]


def test_status_change_other_status_does_not_match():
    wf = make_workflow(trigger_config={"to_status": "Qualified"})
    assert TriggerMatcher().match(status_event(new="Lost"), [wf]) == []


def test_status_change_from_status_must_match_when_set():
    wf = make_workflow(trigger_config={"to_status": "Qualified", "from_status": "Contacted"})
    matcher = TriggerMatcher()
    assert matcher.match(status_event(previous="Contacted"), [wf])
    assert matcher.match(status_event(previous="New"), [wf]) == []


def test_status_change_empty_from_status_means_any():
    wf = make_workflow(trigger_config={"to_status": "Qualified", "from_status": ""})
    assert TriggerMatcher().match(status_event(previous="Anything"), [wf])


def test_status_values_compare_case_sensitively():
    wf = make_workflow(trigger_config={"to_status": "Qualified"})
    assert TriggerMatcher().match(status_event(new="qualified"), [wf]) == []


# ── Candidate filtering ───────────────────────────────────────────────────────

def test_inactive_workflows_are_skipped():
    wf = make_workflow(active=False)
    assert TriggerMatcher().match(status_event(), [wf]) == []


def test_workflows_of_other_trigger_types_are_skipped():
    status_wf = make_workflow()
    score_wf = _score_workflow()
    matches = TriggerMatcher().match(status_event(), [status_wf, score_wf])
    assert [m.workflow_id for m in matches] == [status_wf.id]


def test_one_match_per_matching_workflow():
    a = make_workflow(name="A")
    b = make_workflow(name="B")
    event = status_event()
    matches = TriggerMatcher().match(event, [a, b])
    assert {m.workflow_id for m in matches} == {a.id, b.id}
    assert all(m.event.id == event.id for m in matches)


def test_no_candidates_yields_no_matches():
    assert TriggerMatcher().match(status_event(), []) == []


# ── score_threshold ───────────────────────────────────────────────────────────

def test_score_sequence_fires_only_on_upward_crossings():
    wf = _score_workflow(threshold=80)
    matcher = TriggerMatcher()
    fired = [bool(matcher.match(_score_event(s), [wf])) for s in (60, 75, 80, 65, 90)]
    assert fired == [False, False, True, False, True]
    assert sum(fired) == 2


def test_score_threshold_70_fires_on_each_upward_crossing():
    wf = _score_workflow(threshold=70)
    matcher = TriggerMatcher()
    fired = [bool(matcher.match(_score_event(s), [wf])) for s in (60, 75, 80, 65, 90)]
    assert fired == [False, True, False, False, True]


def test_score_previous_from_payload_wins_over_tracker():
    wf = _score_workflow(threshold=80)
    matcher = TriggerMatcher()
    matcher.match(_score_event(95), [wf])  # tracker now 95
    assert matcher.match(_score_event(85, previous=70), [wf])


def test_score_first_observation_without_previous_does_not_fire():
    wf = _score_workflow(threshold=80)
    assert TriggerMatcher().match(_score_event(99), [wf]) == []


def test_score_staying_above_threshold_does_not_refire():
    wf = _score_workflow(threshold=80)
    matcher = TriggerMatcher()
    assert matcher.match(_score_event(85, previous=70), [wf])
    assert matcher.match(_score_event(90, previous=85), [wf]) == []


def test_score_exactly_at_threshold_counts_as_crossing():
    wf = _score_workflow(threshold=80)
    assert TriggerMatcher().match(_score_event(80, previous=79.9), [wf])


def test_score_tracking_is_per_entity():
    wf = _score_workflow(threshold=80)
    matcher = TriggerMatcher()
    matcher.match(_score_event(70, entity_id="p-1"), [wf])
    matcher.match(_score_event(70, entity_id="p-2"), [wf])
    assert matcher.match(_score_event(85, entity_id="p-1"), [wf])
    assert matcher.tracker.get(wf.id, "p-2") == 70


def test_score_other_field_is_ignored():
    wf = _score_workflow(threshold=80, field="prospect_score")
    assert TriggerMatcher().match(_score_event(90, previous=10, field="health_score"), [wf]) == []


@pytest.mark.parametrize("bad", [None, "high", True])
def test_score_non_numeric_new_score_never_fires(bad):
    wf = _score_workflow()
    assert TriggerMatcher().match(_score_event(bad, previous=10), [wf]) == []


def test_score_tracker_forget_workflow():
    tracker = ScoreTracker()
    tracker.observe("wf-1", "p-1", 10)
    tracker.observe("wf-2", "p-1", 20)
    tracker.forget_workflow("wf-1")
    assert tracker.get("wf-1", "p-1") is None
    assert len(tracker) == 1


def test_deleted_score_workflow_history_is_forgotten():
    kept = _score_workflow(threshold=80)
    dropped = _score_workflow(threshold=80)
    matcher = TriggerMatcher()
    matcher.match(_score_event(70), [kept, dropped])
    assert len(matcher.tracker) == 2

    matcher.match(_score_event(72), [kept])

    assert matcher.tracker.get(dropped.id, "p-1") is None
    assert matcher.tracker.get(kept.id, "p-1") == 72
    assert len(matcher.tracker) == 1


def test_deactivated_score_workflow_history_is_forgotten():
    wf = _score_workflow(threshold=80)
    matcher = TriggerMatcher()
    matcher.match(_score_event(70), [wf])

    paused = wf.model_copy(update={"active": False})
    assert matcher.match(_score_event(85), [paused]) == []
    assert len(matcher.tracker) == 0

    # reactivated: history starts over
    assert matcher.match(_score_event(90), [wf]) == []


def test_edited_threshold_discards_old_scores():
    wf = _score_workflow(threshold=80)
    matcher = TriggerMatcher()
    matcher.match(_score_event(30), [wf])

    edited = wf.model_copy(update={
        "trigger_config": wf.trigger_config.model_copy(update={"threshold": 40}),
    })
    assert matcher.match(_score_event(60), [edited]) == []
    assert matcher.tracker.get(wf.id, "p-1") == 60
    assert matcher.match(_score_event(30), [edited]) == []
    assert matcher.match(_score_event(45), [edited])


def test_other_categories_leave_score_history_alone():
    wf = _score_workflow(threshold=80)
    matcher = TriggerMatcher()
    matcher.match(_score_event(70), [wf])
    matcher.match(status_event(), [make_workflow()])
    assert matcher.tracker.get(wf.id, "p-1") == 70


# ── interaction_added / task_completed ────────────────────────────────────────

@pytest.mark.parametrize("configured", ["", "any", "ANY"])
def test_interaction_wildcards_match_every_type(configured):
    wf = make_workflow(
        trigger_type=TriggerType.INTERACTION_ADDED,
        trigger_config={"interaction_type": configured},
    )
    event = Event(category=TriggerType.INTERACTION_ADDED, entity_id="p-1", payload={"type": "meeting"})
    assert TriggerMatcher().match(event, [wf])


def test_interaction_type_must_match_exactly():
    wf = make_workflow(
        trigger_type=TriggerType.INTERACTION_ADDED,
        trigger_config={"interaction_type": "meeting"},
    )
    matcher = TriggerMatcher()
    meeting = Event(category="interaction_added", entity_id="p-1", payload={"type": "meeting"})
    call = Event(category="interaction_added", entity_id="p-1", payload={"type": "call"})
    assert matcher.match(meeting, [wf])
    assert matcher.match(call, [wf]) == []


def test_task_completed_type_filter():
    wf = make_workflow(
        trigger_type=TriggerType.TASK_COMPLETED,
        trigger_config={"task_type": "demo"},
    )
    matcher = TriggerMatcher()
    demo = Event(category="task_completed", entity_id="p-1", payload={"type": "demo", "task_id": "t-1"})
    other = Event(category="task_completed", entity_id="p-1", payload={"type": "call", "task_id": "t-2"})
    assert matcher.match(demo, [wf])
    assert matcher.match(other, [wf]) == []


# ── date_based ────────────────────────────────────────────────────────────────

def test_date_based_matches_field_entity_type_and_offset():
    wf = make_workflow(
        trigger_type=TriggerType.DATE_BASED,
        trigger_config={"date_field": "next_follow_up", "entity_type": "prospect", "offset_days": 2},
    )
    matcher = TriggerMatcher()
    base = {"date_field": "next_follow_up", "date_value": "2026-03-01"}
    hit = Event(category="date_based", entity_id="p-1", payload={**base, "offset_days": 2})
    wrong_offset = Event(category="date_based", entity_id="p-1", payload={**base, "offset_days": 0})
    wrong_type = Event(category="date_based", entity_type="project", entity_id="x-1",
                       payload={**base, "offset_days": 2})
    assert matcher.match(hit, [wf])
    assert matcher.match(wrong_offset, [wf]) == []
    assert matcher.match(wrong_type, [wf]) == []
