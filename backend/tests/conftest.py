"""
Test configuration and fixtures.
"""
import asyncio
import os
import sys
from datetime import datetime, timezone

import pytest

# Add the backend directory to Python path
backend_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, backend_dir)

# Must be set before any brain_dumper import: column types and the engine are chosen at import time
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ.setdefault("SECRET_KEY", "test-secret-key-with-at-least-32-bytes")
os.environ.setdefault("WEBHOOK_BASE_URL", "https://hooks.example.com")
os.environ.setdefault("TESTING", "1")
os.environ.setdefault("RETRY_BASE_DELAY", "0")
os.environ.setdefault("RETRY_MAX_DELAY", "0")
os.environ.setdefault("SYNC_LOCK_BACKEND", "local")

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from brain_dumper.database.base import Base
from brain_dumper.database.models import Calendar, Task, User


def at(value: str) -> datetime:
    """Aware UTC datetime from a ``YYYY-MM-DDTHH:MM`` string."""
    return datetime.fromisoformat(value).replace(tzinfo=timezone.utc)


class FakeClock:
    """Settable stand-in for ``utcnow``."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock():
    # Monday
    return FakeClock(at("2024-01-15T08:00"))


@pytest.fixture(scope="function")
def engine():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(engine):
    """Create a test database session."""
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def sample_user(db_session):
    user = User(
        email="test@example.com",
        timezone="UTC",
        scheduling_preferences={"working_days": [0, 1, 2, 3, 4, 5, 6]}
    )
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture
def sample_calendar(db_session, sample_user):
    calendar = Calendar(
        user_id=sample_user.id,
        google_calendar_id="primary",
        is_primary=True,
        enabled=True,
        access_token="access_token",
        refresh_token="refresh_token"
    )
    db_session.add(calendar)
    db_session.commit()
    db_session.refresh(calendar)
    return calendar


@pytest.fixture
def make_task(db_session, sample_user):
    def _make(content="Review budget", **fields):
        fields.setdefault("priority", "medium")
        fields.setdefault("task_type", "other")
        task = Task(user_id=sample_user.id, content=content, **fields)
        db_session.add(task)
        db_session.commit()
        db_session.refresh(task)
        return task
    return _make


class FakeCalendarClient:
    """In-memory provider with the ``GoogleCalendarClient`` coroutine surface."""

    def __init__(self):
        self.events = {}
        self.list_responses = []
        self.list_calls = []
        self.watch_calls = []
        self.stopped_channels = []
        self.fail_inserts = 0
        self.stop_error = None
        self.list_delay = 0.0
        self._next_id = 0

    def factory(self, db, user_id):
        return self

    async def list_all_events(self, calendar_id, sync_token=None, **params):
        self.list_calls.append({"calendar_id": calendar_id, "sync_token": sync_token, **params})
        if self.list_delay:
            await asyncio.sleep(self.list_delay)
        response = self.list_responses.pop(0) if self.list_responses else {"items": []}
        if isinstance(response, Exception):
            raise response
        return response

    async def get_event(self, calendar_id, event_id):
        from brain_dumper.core.exceptions import ProviderNotFound
        if event_id not in self.events:
            raise ProviderNotFound("get_event: resource not found")
        return self.events[event_id]

    async def insert_event(self, calendar_id, body):
        if self.fail_inserts:
            self.fail_inserts -= 1
            raise RuntimeError("insert failed")
        self._next_id += 1
        event = dict(body, id=f"evt-{self._next_id}")
        self.events[event["id"]] = event
        return event

    async def patch_event(self, calendar_id, event_id, body):
        event = dict(self.events.get(event_id, {"id": event_id}))
        event.update(body)
        self.events[event_id] = event
        return event

    async def delete_event(self, calendar_id, event_id):
        return self.events.pop(event_id, None) is not None

    async def watch_events(self, calendar_id, channel_id, address, token, expiration_ms=None):
        self.watch_calls.append({
            "calendar_id": calendar_id,
            "channel_id": channel_id,
            "address": address,
            "token": token,
        })
        return {"id": channel_id, "resourceId": f"res-{channel_id}", "expiration": str(expiration_ms)}

    async def stop_channel(self, channel_id, resource_id):
        if self.stop_error is not None:
            raise self.stop_error
        self.stopped_channels.append(channel_id)


@pytest.fixture
def fake_client():
    return FakeCalendarClient()


class FakeRedisLock:
    def __init__(self, owner, name):
        self.owner = owner
        self.name = name

    async def acquire(self):
        await self.owner.locks.setdefault(self.name, asyncio.Lock()).acquire()
        self.owner.acquired.append(self.name)
        return True

    async def release(self):
        self.owner.locks[self.name].release()


class FakeRedis:
    """Shared ``redis.asyncio`` lock surface standing in for one Redis server."""

    def __init__(self):
        self.locks = {}
        self.acquired = []
        self.lock_args = []

    def lock(self, name, timeout=None, blocking_timeout=None):
        self.lock_args.append({"name": name, "timeout": timeout, "blocking_timeout": blocking_timeout})
        return FakeRedisLock(self, name)


@pytest.fixture
def fake_redis():
    return FakeRedis()
