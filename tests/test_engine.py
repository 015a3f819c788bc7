"""AutomationEngine end to end: events in, runs driven to completion, audit out.

All tests use a fully wired in-memory engine with fake collaborators.  No
worker pool is started unless a test says so, so every event and tick
drains inline before returning.
"""

from datetime import timedelta

import pytest
from unittest.mock import AsyncMock

from cadence.core.engine import AutomationEngine
from cadence.exceptions import RunNotFound, RunStateError
from cadence.triggers.event_bus import EventBus
from cadence.types import AuditEntryType, AuditQuery, Event, RunStatus, TriggerType, WorkflowRun

from conftest import make_workflow, no_sleep, status_event


@pytest.fixture
def ada(services):
    services.entities.put("prospect", "p-1", name="Ada", email="ada@example.com")


# ── Multi-step run with a wait ────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_three_step_run_waits_then_completes(engine, services, clock, three_step_workflow, ada):
    wf = await engine.workflows.save(three_step_workflow)
    started = clock.now

    created = await engine.on_event(status_event())

    assert len(created) == 1
    run = await engine.get_run(created[0])
    assert run.status == RunStatus.WAITING
    assert run.cursor == 2
    assert run.scheduled_resume_at == started + timedelta(days=3)
    assert len(services.email.sent) == 1
    assert services.tasks.created == []

    clock.advance(days=2)
    early = await engine.tick()
    assert early.runs_resumed == []
    assert (await engine.get_run(run.id)).status == RunStatus.WAITING

    clock.advance(days=1)
    report = await engine.tick()
    assert report.runs_resumed == [run.id]

    run = await engine.get_run(run.id)
    assert run.status == RunStatus.COMPLETED
    assert run.cursor == 3
    assert run.steps_executed == 3
    assert run.completed_at == clock.now
    assert [r.action_type for r in run.step_results] == ["send_email", "wait_days", "create_task"]
    assert services.tasks.created[0]["title"] == "Follow up with Ada"
    assert (await engine.workflows.get(wf.id)).execution_count == 1

    history = await engine.audit.run_history(run.id)
    assert [e.entry_type for e in history] == [
        AuditEntryType.RUN_CREATED,
        AuditEntryType.STEP_EXECUTED,
        AuditEntryType.STEP_EXECUTED,
        AuditEntryType.RUN_WAITING,
        AuditEntryType.RUN_RESUMED,
        AuditEntryType.STEP_EXECUTED,
        AuditEntryType.RUN_COMPLETED,
    ]


# ── Matching ──────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_replayed_event_creates_no_second_run(engine, services, ada):
    wf = await engine.workflows.save(make_workflow())
    event = status_event()

    first = await engine.on_event(event)
    second = await engine.on_event(event)

    assert len(first) == 1
    assert second == []
    assert len(await engine.list_runs()) == 1
    assert len(services.tasks.created) == 1
    assert (await engine.workflows.get(wf.id)).execution_count == 1


@pytest.mark.asyncio
async def test_event_without_candidates_is_a_no_op(engine):
    assert await engine.on_event(status_event()) == []
    assert await engine.query_audit() == []


@pytest.mark.asyncio
async def test_non_matching_event_creates_nothing(engine):
    await engine.workflows.save(make_workflow(trigger_config={"to_status": "Won"}))
    assert await engine.on_event(status_event(new="Lost")) == []


@pytest.mark.asyncio
async def test_inactive_workflow_does_not_fire(engine):
    wf = await engine.workflows.save(make_workflow())
    await engine.workflows.deactivate(wf.id)
    assert await engine.on_event(status_event()) == []


@pytest.mark.asyncio
async def test_one_event_fires_every_matching_workflow(engine, ada):
    a = await engine.workflows.save(make_workflow(name="A"))
    b = await engine.workflows.save(make_workflow(name="B"))

    created = await engine.on_event(status_event())

    runs = [await engine.get_run(rid) for rid in created]
    assert {r.workflow_id for r in runs} == {a.id, b.id}
    matched = await engine.query_audit(AuditQuery(entry_types=[AuditEntryType.TRIGGER_MATCHED]))
    assert len(matched) == 2


@pytest.mark.asyncio
async def test_distinct_events_for_same_entity_run_concurrently(engine, three_step_workflow, ada):
    await engine.workflows.save(three_step_workflow)
    first = await engine.on_event(status_event())
    second = await engine.on_event(status_event())

    assert len(first) == len(second) == 1
    waiting = await engine.list_runs(status_filter=[RunStatus.WAITING])
    assert len(waiting) == 2


@pytest.mark.asyncio
async def test_bus_delivers_events_to_engine(engine, ada):
    await engine.workflows.save(make_workflow())
    bus = EventBus()
    engine.attach(bus)

    assert await bus.publish(status_event()) == 1
    assert len(await engine.list_runs()) == 1


# ── Failures ──────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_permanent_failure_stops_the_run(engine, services, ada):
    await engine.workflows.save(make_workflow(steps=[
        {"action_type": "update_prospect", "action_config": {"field": "status", "value": "Nurture"}},
        {"action_type": "create_task", "action_config": {"title": "never"}},
    ]))
    from cadence.exceptions import PermanentServiceError
    services.entities.fail_next(PermanentServiceError("record locked"))

    [run_id] = await engine.on_event(status_event())

    run = await engine.get_run(run_id)
    assert run.status == RunStatus.FAILED
    assert "record locked" in run.error
    assert run.cursor == 0
    assert services.tasks.created == []
    failed = await engine.query_audit(AuditQuery(run_id=run_id, entry_types=[AuditEntryType.RUN_FAILED]))
    assert len(failed) == 1


@pytest.mark.asyncio
async def test_exhausted_retries_fail_the_run(engine, services, config, ada):
    from cadence.exceptions import TransientServiceError
    await engine.workflows.save(make_workflow())
    services.tasks.fail_next(*[TransientServiceError("503")] * config.retry_max_attempts)

    [run_id] = await engine.on_event(status_event())

    run = await engine.get_run(run_id)
    assert run.status == RunStatus.FAILED
    assert run.step_results[0].attempt_count == config.retry_max_attempts


# ── Snapshots and definition changes ──────────────────────────────────────────

@pytest.mark.asyncio
async def test_editing_workflow_does_not_change_runs_in_flight(engine, services, clock, three_step_workflow, ada):
    wf = await engine.workflows.save(three_step_workflow)
    [run_id] = await engine.on_event(status_event())

    await engine.workflows.update(wf.id, steps=[
        {"action_type": "create_interaction", "action_config": {"interaction_type": "note"}},
    ])
    clock.advance(days=3)
    await engine.tick()

    assert (await engine.get_run(run_id)).status == RunStatus.COMPLETED
    assert len(services.tasks.created) == 1
    assert services.interactions.logged == []


@pytest.mark.asyncio
async def test_deleted_workflow_runs_keep_going(engine, services, clock, three_step_workflow, ada):
    wf = await engine.workflows.save(three_step_workflow)
    [run_id] = await engine.on_event(status_event())
    await engine.workflows.delete(wf.id)

    clock.advance(days=3)
    await engine.tick()

    assert (await engine.get_run(run_id)).status == RunStatus.COMPLETED


# ── Cancellation ──────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_cancel_waiting_run_prevents_remaining_steps(engine, services, clock, three_step_workflow, ada):
    await engine.workflows.save(three_step_workflow)
    [run_id] = await engine.on_event(status_event())

    cancelled = await engine.cancel(run_id, reason="prospect unsubscribed")
    assert cancelled.status == RunStatus.CANCELLED
    assert cancelled.error == "prospect unsubscribed"
    assert cancelled.scheduled_resume_at is None

    clock.advance(days=5)
    report = await engine.tick()
    assert report.runs_resumed == []
    assert services.tasks.created == []

    with pytest.raises(RunStateError):
        await engine.cancel(run_id)


@pytest.mark.asyncio
async def test_cancel_unknown_run(engine):
    with pytest.raises(RunNotFound):
        await engine.cancel("missing")
    with pytest.raises(RunNotFound):
        await engine.get_run("missing")


# ── Date-based triggers ───────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_tick_fires_date_trigger_once(engine, services, clock):
    await engine.workflows.save(make_workflow(
        name="Follow-up due",
        trigger_type=TriggerType.DATE_BASED,
        trigger_config={"date_field": "next_follow_up"},
        steps=[{"action_type": "create_task", "action_config": {"title": "Follow up {{name}}"}}],
    ))
    services.entities.put("prospect", "p-1", name="Ada")
    services.entities.due[("prospect", "next_follow_up")] = [
        {"id": "p-1", "name": "Ada", "next_follow_up": (clock.now - timedelta(hours=1)).isoformat()},
    ]

    first = await engine.tick()
    second = await engine.tick()

    assert first.events_emitted == 1
    assert len(first.runs_created) == 1
    assert second.events_emitted == 1
    assert second.runs_created == []
    assert [t["title"] for t in services.tasks.created] == ["Follow up Ada"]


@pytest.mark.asyncio
async def test_tick_without_date_workflows_skips_sweep(engine, services):
    await engine.workflows.save(make_workflow())
    report = await engine.tick()
    assert report.events_emitted == 0
    assert services.entities.find_due_calls == []


# ── Queries ───────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_list_runs_by_workflow_and_status(engine, ada):
    a = await engine.workflows.save(make_workflow(name="A"))
    await engine.workflows.save(make_workflow(name="B", trigger_config={"to_status": "Won"}))
    await engine.on_event(status_event())
    await engine.on_event(status_event(new="Won", previous="Qualified"))

    assert len(await engine.list_runs()) == 2
    only_a = await engine.list_runs(workflow_id=a.id, status_filter=[RunStatus.COMPLETED])
    assert [r.workflow_id for r in only_a] == [a.id]


# ── Worker pool ───────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_worker_pool_drives_runs(services, config, clock, ada):
    engine = AutomationEngine.build(services, config=config, clock=clock, sleep=no_sleep)
    await engine.workflows.save(make_workflow(steps=[
        {"action_type": "create_task", "action_config": {"title": "one"}},
        {"action_type": "create_task", "action_config": {"title": "two"}},
    ]))
    await engine.start(concurrency=2, tick=False)
    try:
        [run_id] = await engine.on_event(status_event())
        await engine.scheduler.join()
    finally:
        await engine.stop()

    assert (await engine.get_run(run_id)).status == RunStatus.COMPLETED
    assert [t["title"] for t in services.tasks.created] == ["one", "two"]
    assert engine.scheduler.running is False


@pytest.mark.asyncio
async def test_event_categories_as_strings(engine, ada):
    await engine.workflows.save(make_workflow(
        trigger_type=TriggerType.TASK_COMPLETED,
        trigger_config={"task_type": "demo"},
    ))
    event = Event(category="task_completed", entity_id="p-1", payload={"type": "demo"})
    assert len(await engine.on_event(event)) == 1


# ── Step-by-step progress ─────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_run_advances_one_step_per_process(services, config, clock, ada):
    hook = AsyncMock()
    engine = AutomationEngine.build(services, config=config, clock=clock, sleep=no_sleep, enqueue=hook)
    await engine.workflows.save(make_workflow(steps=[
        {"action_type": "create_task", "action_config": {"title": "Call {{name}}"}},
        {"action_type": "wait_days", "action_config": {"days": 2}},
        {"action_type": "send_email", "action_config": {"subject": "Checking in"}},
    ]))
    [run_id] = await engine.on_event(status_event())

    after_task = await engine.scheduler.process(run_id)
    assert after_task.status == RunStatus.RUNNING
    assert after_task.cursor == 1
    assert len(services.tasks.created) == 1
    assert services.email.sent == []

    waiting = await engine.scheduler.process(run_id)
    assert waiting.status == RunStatus.WAITING
    assert waiting.cursor == 2
    assert waiting.scheduled_resume_at == clock.now + timedelta(days=2)

    clock.advance(days=2)
    report = await engine.tick()
    assert report.runs_resumed == [run_id]
    hook.assert_awaited_with(run_id)

    done = await engine.scheduler.process(run_id)
    assert done.status == RunStatus.COMPLETED
    assert done.cursor == 3
    assert [m["subject"] for m in services.email.sent] == ["Checking in"]


# ── Lost queue entries ────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_tick_reenqueues_running_run_after_lease(services, config, clock, ada):
    # the hook accepts ids but nothing ever consumes them
    hook = AsyncMock()
    engine = AutomationEngine.build(services, config=config, clock=clock, sleep=no_sleep, enqueue=hook)
    await engine.workflows.save(make_workflow())
    [run_id] = await engine.on_event(status_event())
    assert hook.await_count == 1

    early = await engine.tick()
    assert early.runs_recovered == []
    assert hook.await_count == 1

    clock.advance(seconds=config.run_lease_seconds + 1)
    report = await engine.tick()

    assert report.runs_recovered == [run_id]
    assert hook.await_count == 2
    hook.assert_awaited_with(run_id)
    run = await engine.get_run(run_id)
    assert run.status == RunStatus.RUNNING
    assert run.cursor == 0
    assert run.updated_at == clock.now

    # leased again: the next tick leaves it alone
    assert (await engine.tick()).runs_recovered == []

    recovered = await engine.audit.query(AuditQuery(run_id=run_id, entry_types=[AuditEntryType.RUN_RESUMED]))
    assert [e.details["reason"] for e in recovered] == ["lease_expired"]

    assert (await engine.scheduler.process(run_id)).status == RunStatus.COMPLETED
    assert len(services.tasks.created) == 1


@pytest.mark.asyncio
async def test_inline_tick_drives_run_left_running_by_a_crash(engine, services, config, clock, ada):
    wf = await engine.workflows.save(make_workflow())
    # committed as Running, then the process died before enqueueing it
    run = await engine.runs.create(WorkflowRun(
        workflow_id=wf.id,
        triggering_event_id="evt-crash",
        subject_entity_type="prospect",
        subject_entity_id="p-1",
        steps_snapshot=wf.steps,
        status=RunStatus.RUNNING,
        created_at=clock.now,
        updated_at=clock.now,
    ))

    clock.advance(seconds=config.run_lease_seconds)
    report = await engine.tick()

    assert report.runs_recovered == [run.id]
    assert (await engine.get_run(run.id)).status == RunStatus.COMPLETED
    assert [t["title"] for t in services.tasks.created] == ["Call Ada"]
