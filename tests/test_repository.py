"""Repository against SQLite (aiosqlite): round trips, CAS, claims, audit queries."""

from datetime import datetime, timedelta, timezone

import pytest
from unittest.mock import AsyncMock

from cadence.config import CadenceConfig
from cadence.core.engine import AutomationEngine
from cadence.db.repository import Repository, SessionRepository
from cadence.types import (
    AuditEntry,
    AuditEntryType,
    AuditQuery,
    RunQuery,
    RunStatus,
    TriggerType,
    WorkflowRun,
)

from conftest import make_workflow, no_sleep, status_event

T0 = datetime(2026, 5, 4, 9, 0, tzinfo=timezone.utc)


def _run(workflow_id, status=RunStatus.RUNNING, **kw):
    return WorkflowRun(
        workflow_id=workflow_id,
        workflow_name="wf",
        triggering_event_id="evt-1",
        trigger_payload={"new_status": "Qualified"},
        subject_entity_type="prospect",
        subject_entity_id="p-1",
        steps_snapshot=make_workflow(steps=[
            {"action_type": "send_email", "action_config": {"subject": "Hi"}},
            {"action_type": "wait_days", "action_config": {"days": 2}},
        ]).steps,
        status=status,
        **kw,
    )


# ── Workflows ──

@pytest.mark.asyncio
async def test_workflow_round_trip(db_session):
    repo = Repository(db_session)
    wf = make_workflow(
        trigger_type=TriggerType.SCORE_THRESHOLD,
        trigger_config={"threshold": 75.5},
        created_at=T0,
    )
    await repo.create_workflow(wf)

    loaded = await repo.get_workflow(wf.id)
    assert loaded.trigger_type == TriggerType.SCORE_THRESHOLD
    assert loaded.trigger_config.threshold == 75.5
    assert loaded.steps[0].action_config.title == "Call {{name}}"
    assert loaded.created_at == T0
    assert loaded.created_at.tzinfo is not None


@pytest.mark.asyncio
async def test_list_workflows_filters(db_session):
    repo = Repository(db_session)
    active = make_workflow(name="active", created_at=T0)
    inactive = make_workflow(name="inactive", active=False, created_at=T0 + timedelta(minutes=1))
    other = make_workflow(
        name="other", trigger_type=TriggerType.TASK_COMPLETED, trigger_config={},
        created_at=T0 + timedelta(minutes=2),
    )
    for wf in (active, inactive, other):
        await repo.create_workflow(wf)

    assert [w.name for w in await repo.list_workflows()] == ["other", "inactive", "active"]
    found = await repo.list_workflows(active_only=True, trigger_type=TriggerType.STATUS_CHANGE)
    assert [w.name for w in found] == ["active"]


@pytest.mark.asyncio
async def test_update_workflow_keeps_execution_count(db_session):
    repo = Repository(db_session)
    wf = make_workflow()
    await repo.create_workflow(wf)
    assert await repo.increment_execution_count(wf.id) == 1

    updated = await repo.update_workflow(wf.model_copy(update={"name": "renamed", "execution_count": 0}))
    assert updated.name == "renamed"
    assert updated.execution_count == 1
    assert await repo.update_workflow(make_workflow()) is None


@pytest.mark.asyncio
async def test_delete_workflow(db_session):
    repo = Repository(db_session)
    wf = make_workflow()
    await repo.create_workflow(wf)
    assert await repo.delete_workflow(wf.id) is True
    assert await repo.delete_workflow(wf.id) is False
    assert await repo.get_workflow(wf.id) is None


# ── Runs ──

@pytest.mark.asyncio
async def test_run_round_trip(db_session):
    repo = Repository(db_session)
    run = _run("wf-1")
    await repo.create_run(run)

    loaded = await repo.get_run(run.id)
    assert loaded.status == RunStatus.RUNNING
    assert [s.action_type for s in loaded.steps_snapshot] == ["send_email", "wait_days"]
    assert loaded.trigger_payload == {"new_status": "Qualified"}
    assert await repo.get_run("missing") is None


@pytest.mark.asyncio
async def test_compare_and_swap_run(db_session):
    repo = Repository(db_session)
    run = _run("wf-1")
    await repo.create_run(run)

    moved = run.model_copy(update={"cursor": 1, "version": 1})
    assert await repo.compare_and_swap_run(moved, expected_version=0) is True
    assert await repo.compare_and_swap_run(moved, expected_version=0) is False
    assert (await repo.get_run(run.id)).cursor == 1


@pytest.mark.asyncio
async def test_compare_and_swap_refuses_terminal_runs(db_session):
    repo = Repository(db_session)
    run = _run("wf-1", status=RunStatus.COMPLETED)
    await repo.create_run(run)
    assert await repo.compare_and_swap_run(run.model_copy(update={"version": 1}), 0) is False


@pytest.mark.asyncio
async def test_list_due_waiting_runs(db_session):
    repo = Repository(db_session)
    due = _run("wf-1", status=RunStatus.WAITING, cursor=2, scheduled_resume_at=T0)
    later = _run("wf-1", status=RunStatus.WAITING, cursor=2, scheduled_resume_at=T0 + timedelta(days=1))
    for run in (due, later):
        await repo.create_run(run)

    found = await repo.list_due_waiting_runs(T0 + timedelta(minutes=5))
    assert [r.id for r in found] == [due.id]
    assert found[0].scheduled_resume_at == T0


@pytest.mark.asyncio
async def test_list_stale_running_runs(db_session):
    repo = Repository(db_session)
    stale = _run("wf-1", updated_at=T0 - timedelta(minutes=30))
    fresh = _run("wf-1", updated_at=T0)
    parked = _run("wf-1", status=RunStatus.WAITING, cursor=2, updated_at=T0 - timedelta(hours=1))
    for run in (stale, fresh, parked):
        await repo.create_run(run)

    found = await repo.list_stale_running_runs(T0 - timedelta(minutes=10))
    assert [r.id for r in found] == [stale.id]


@pytest.mark.asyncio
async def test_list_runs_query(db_session):
    repo = Repository(db_session)
    a = _run("wf-1", created_at=T0)
    b = _run("wf-1", status=RunStatus.FAILED, created_at=T0 + timedelta(minutes=1))
    c = _run("wf-2", created_at=T0 + timedelta(minutes=2))
    for run in (a, b, c):
        await repo.create_run(run)

    wf1 = await repo.list_runs(RunQuery(workflow_id="wf-1"))
    assert [r.id for r in wf1] == [b.id, a.id]
    failed = await repo.list_runs(RunQuery(statuses=[RunStatus.FAILED]))
    assert [r.id for r in failed] == [b.id]


# ── Claims and audit ──

@pytest.mark.asyncio
async def test_claim_trigger_is_unique(db_session):
    repo = Repository(db_session)
    assert await repo.claim_trigger("wf-1", "evt-1") is True
    assert await repo.claim_trigger("wf-1", "evt-1") is False
    assert await repo.claim_trigger("wf-1", "evt-2") is True


@pytest.mark.asyncio
async def test_audit_query_filters_and_order(db_session):
    repo = Repository(db_session)
    entries = [
        AuditEntry(entry_type=AuditEntryType.RUN_CREATED, run_id="r-1", created_at=T0),
        AuditEntry(entry_type=AuditEntryType.STEP_EXECUTED, run_id="r-1", step_index=0,
                   details={"outcome": "success"}, created_at=T0 + timedelta(seconds=1)),
        AuditEntry(entry_type=AuditEntryType.RUN_CREATED, run_id="r-2", created_at=T0 + timedelta(seconds=2)),
    ]
    for e in entries:
        await repo.append_audit_entry(e)

    r1 = await repo.query_audit(AuditQuery(run_id="r-1"))
    assert [e.entry_type for e in r1] == [AuditEntryType.RUN_CREATED, AuditEntryType.STEP_EXECUTED]
    assert r1[1].details == {"outcome": "success"}

    created = await repo.query_audit(AuditQuery(entry_types=[AuditEntryType.RUN_CREATED]))
    assert [e.run_id for e in created] == ["r-1", "r-2"]

    recent = await repo.query_audit(AuditQuery(since=T0 + timedelta(seconds=2)))
    assert [e.run_id for e in recent] == ["r-2"]


# ── Engine on the database ──

@pytest.mark.asyncio
async def test_engine_runs_against_session_repository(session_factory, services, clock):
    services.entities.put("prospect", "p-1", name="Ada", email="ada@example.com")
    engine = AutomationEngine.build(
        services,
        config=CadenceConfig(),
        repository=SessionRepository(session_factory),
        clock=clock,
        sleep=no_sleep,
    )
    wf = await engine.workflows.save(make_workflow(steps=[
        {"action_type": "send_email", "action_config": {"subject": "Hi {{name}}"}},
        {"action_type": "wait_days", "action_config": {"days": 1}},
        {"action_type": "create_task", "action_config": {"title": "Call {{name}}"}},
    ]))
    event = status_event()

    [run_id] = await engine.on_event(event)
    assert await engine.on_event(event) == []
    assert (await engine.get_run(run_id)).status == RunStatus.WAITING

    clock.advance(days=1)
    report = await engine.tick()

    assert report.runs_resumed == [run_id]
    run = await engine.get_run(run_id)
    assert run.status == RunStatus.COMPLETED
    assert run.version == 4
    assert (await engine.workflows.get(wf.id)).execution_count == 1
    history = await engine.audit.run_history(run_id)
    assert history[-1].entry_type == AuditEntryType.RUN_COMPLETED


@pytest.mark.asyncio
async def test_restarted_engine_recovers_runs_left_running(session_factory, services, clock):
    services.entities.put("prospect", "p-1", name="Ada", email="ada@example.com")
    repository = SessionRepository(session_factory)
    config = CadenceConfig()
    # the first process commits the run, then dies with its queue entry
    crashed = AutomationEngine.build(
        services, config=config, repository=repository, clock=clock, sleep=no_sleep, enqueue=AsyncMock(),
    )
    await crashed.workflows.save(make_workflow())
    [run_id] = await crashed.on_event(status_event())
    assert (await crashed.get_run(run_id)).status == RunStatus.RUNNING

    restarted = AutomationEngine.build(
        services, config=config, repository=repository, clock=clock, sleep=no_sleep,
    )
    assert (await restarted.tick()).runs_recovered == []

    clock.advance(seconds=config.run_lease_seconds + 1)
    report = await restarted.tick()

    assert report.runs_recovered == [run_id]
    assert (await restarted.get_run(run_id)).status == RunStatus.COMPLETED
    assert len(services.tasks.created) == 1
    history = await restarted.audit.run_history(run_id)
    assert AuditEntryType.RUN_RESUMED in [e.entry_type for e in history]
    assert history[-1].entry_type == AuditEntryType.RUN_COMPLETED
