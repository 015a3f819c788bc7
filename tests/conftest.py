"""Test fixtures: fake collaborators, a controllable clock, sample workflows.

All tests should use these fixtures for consistency.
"""

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from cadence.config import CadenceConfig
from cadence.core.engine import AutomationEngine
from cadence.services.base import Collaborators
from cadence.types import Event, TriggerType, Workflow


@pytest.fixture
def config():
    """Test configuration with safe defaults."""
    return CadenceConfig(
        debug=True,
        database_url="sqlite+aiosqlite:///:memory:",
        redis_url="redis://localhost:6379/15",  # test DB
        retry_max_attempts=3,
        retry_base_delay_seconds=0.01,
        service_timeout_seconds=5.0,
        max_steps_per_run=50,
        max_cas_retries=3,
    )


# ── Clock ─────────────────────────────────────────────────────────────────────

class FakeClock:
    """Callable clock the tests move forward by hand."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))


async def no_sleep(_seconds: float) -> None:
    return None


# ── Fake collaborators ────────────────────────────────────────────────────────

class _FailureQueue:
    """Exceptions to raise on the next calls, one per call, oldest first."""

    def __init__(self):
        self.failures: list[Exception] = []

    def fail_next(self, *excs: Exception) -> None:
        self.failures.extend(excs)

    def _maybe_fail(self) -> None:
        if self.failures:
            raise self.failures.pop(0)


class FakeTaskService(_FailureQueue):
    def __init__(self):
        super().__init__()
        self.created: list[dict] = []
        self.keys: list[str] = []

    async def create(self, fields, idempotency_key):
        self.keys.append(idempotency_key)
        self._maybe_fail()
        self.created.append(fields)
        return f"task-{len(self.created)}"


class FakeEmailService(_FailureQueue):
    def __init__(self):
        super().__init__()
        self.sent: list[dict] = []
        self.keys: list[str] = []

    async def send(self, to, subject, body, idempotency_key):
        self.keys.append(idempotency_key)
        self._maybe_fail()
        self.sent.append({"to": to, "subject": subject, "body": body})


class FakeEntityService(_FailureQueue):
    def __init__(self):
        super().__init__()
        self.records: dict[tuple[str, str], dict] = {}
        self.updates: list[tuple] = []
        self.due: dict[tuple[str, str], list[dict]] = {}
        self.find_due_calls: list[tuple] = []

    def put(self, entity_type: str, entity_id: str, **fields) -> None:
        self.records[(entity_type, entity_id)] = {"id": entity_id, **fields}

    async def get(self, entity_type, entity_id):
        return dict(self.records.get((entity_type, entity_id), {}))

    async def update_field(self, entity_type, entity_id, field, value, idempotency_key):
        self._maybe_fail()
        self.updates.append((entity_type, entity_id, field, value))
        self.records.setdefault((entity_type, entity_id), {"id": entity_id})[field] = value

    async def find_due(self, entity_type, date_field, due_before):
        self.find_due_calls.append((entity_type, date_field, due_before))
        self._maybe_fail()
        return [
            dict(r) for r in self.due.get((entity_type, date_field), [])
            if r.get(date_field) is None or _as_dt(r[date_field]) <= due_before
        ]


def _as_dt(value):
    if isinstance(value, datetime):
        return value
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class FakeInteractionService(_FailureQueue):
    def __init__(self):
        super().__init__()
        self.logged: list[dict] = []

    async def log(self, fields, idempotency_key):
        self._maybe_fail()
        self.logged.append(fields)
        return f"int-{len(self.logged)}"


@pytest.fixture
def services():
    return Collaborators(
        tasks=FakeTaskService(),
        email=FakeEmailService(),
        entities=FakeEntityService(),
        interactions=FakeInteractionService(),
    )


# ── Engine ────────────────────────────────────────────────────────────────────

@pytest.fixture
def engine(services, config, clock):
    """In-memory engine; no worker pool, so events and ticks drain inline."""
    return AutomationEngine.build(services, config=config, clock=clock, sleep=no_sleep)


# ── Sample data ───────────────────────────────────────────────────────────────

def make_workflow(
    name: str = "Qualified follow-up",
    trigger_type: TriggerType = TriggerType.STATUS_CHANGE,
    trigger_config: dict = None,
    steps: list = None,
    **kwargs,
) -> Workflow:
    if trigger_config is None:
        trigger_config = {"to_status": "Qualified"}
    if steps is None:
        steps = [{"action_type": "create_task", "action_config": {"title": "Call {{name}}"}}]
    return Workflow.model_validate({
        "name": name,
        "trigger_type": trigger_type,
        "trigger_config": trigger_config,
        "steps": steps,
        **kwargs,
    })


def status_event(entity_id: str = "p-1", new: str = "Qualified", previous: str = "Contacted", **kwargs) -> Event:
    return Event(
        category=TriggerType.STATUS_CHANGE,
        entity_id=entity_id,
        payload={"previous_status": previous, "new_status": new},
        **kwargs,
    )


@pytest.fixture
def three_step_workflow():
    """Email → wait 3 days → task: the canonical follow-up sequence."""
    return make_workflow(
        name="Qualified nurture",
        steps=[
            {"action_type": "send_email",
             "action_config": {"subject": "Hi {{name}}", "body": "Thanks for your time."}},
            {"action_type": "wait_days", "action_config": {"days": 3}},
            {"action_type": "create_task",
             "action_config": {"title": "Follow up with {{name}}", "due_in_days": 1}},
        ],
    )


# ── Database ──────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def db_session():
    """Fresh in-memory SQLite schema per test."""
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
    from sqlalchemy.pool import StaticPool
    from cadence.db.database import init_db

    db_engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool)
    await init_db(bind=db_engine)
    factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as session:
        yield session
    await db_engine.dispose()


@pytest_asyncio.fixture
async def session_factory():
    """Session factory over a shared in-memory SQLite database."""
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
    from sqlalchemy.pool import StaticPool
    from cadence.db.database import init_db

    db_engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool)
    await init_db(bind=db_engine)
    yield async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    await db_engine.dispose()
