"""
Tests for webhook classification and incremental calendar sync.
"""
import asyncio
from datetime import timedelta

import pytest

from brain_dumper.core.exceptions import AuthenticationExpired, SyncCursorExpired
from brain_dumper.core.locks import RedisKeyedLock
from brain_dumper.core.timeutils import as_utc
from brain_dumper.database.models import CalendarEvent, SyncCursor, WatchSubscription
from brain_dumper.services.calendar_sync import (
    CalendarSyncProcessor, WebhookAction, WebhookHeaders, classify_notification, time_changed
)
from brain_dumper.services.event_builder import BUFFER_TYPE_KEY, TASK_ID_KEY
from brain_dumper.services.watch_manager import make_channel_token

from conftest import at


def _headers(method="POST", channel_id="channel-1", state="exists", token="u1:primary"):
    return WebhookHeaders(method=method, channel_id=channel_id, resource_state=state, channel_token=token)


def _event(event_id, start, end, task_id=None, status="confirmed", buffer_type=None):
    payload = {
        "id": event_id,
        "status": status,
        "summary": "Review budget",
        "start": {"dateTime": start},
        "end": {"dateTime": end},
    }
    if task_id:
        private = {TASK_ID_KEY: task_id}
        if buffer_type:
            private[BUFFER_TYPE_KEY] = buffer_type
        payload["extendedProperties"] = {"private": private}
    return payload


class TestClassifyNotification:
    """Status codes for every kind of push notification."""

    @pytest.fixture
    def subscription(self, clock):
        return WatchSubscription(
            id="channel-1",
            resource_id="res-1",
            user_id="u1",
            calendar_id="primary",
            channel_token="u1:primary",
            expiration=clock.now + timedelta(days=3)
        )

    def test_only_post_is_accepted(self, subscription, clock):
        decision = classify_notification(_headers(method="GET"), subscription, clock.now)
        assert (decision.status_code, decision.action) == (405, WebhookAction.REJECT)

    def test_missing_headers(self, subscription, clock):
        decision = classify_notification(_headers(channel_id=None), subscription, clock.now)
        assert (decision.status_code, decision.message) == (400, "Missing channel ID")

        decision = classify_notification(_headers(state=None), subscription, clock.now)
        assert (decision.status_code, decision.message) == (400, "Missing resource state")

    def test_sync_handshake_is_acknowledged(self, clock):
        decision = classify_notification(_headers(state="sync"), None, clock.now)
        assert (decision.status_code, decision.action) == (200, WebhookAction.ACKNOWLEDGE)

    def test_unknown_channel_is_acknowledged(self, clock):
        decision = classify_notification(_headers(), None, clock.now)
        assert decision.status_code == 200
        assert decision.message == "Unknown channel"

    def test_bad_token_is_forbidden(self, subscription, clock):
        decision = classify_notification(_headers(token="u2:primary"), subscription, clock.now)
        assert decision.status_code == 403

        decision = classify_notification(_headers(token=None), subscription, clock.now)
        assert decision.status_code == 403

    def test_expired_channel_is_renewed(self, subscription, clock):
        subscription.expiration = clock.now - timedelta(minutes=1)
        decision = classify_notification(_headers(), subscription, clock.now)
        assert (decision.status_code, decision.action) == (200, WebhookAction.RENEW)

    def test_change_states_trigger_sync(self, subscription, clock):
        for state in ("exists", "update"):
            decision = classify_notification(_headers(state=state), subscription, clock.now)
            assert (decision.status_code, decision.action) == (200, WebhookAction.SYNC)

    def test_other_states_are_ignored(self, subscription, clock):
        decision = classify_notification(_headers(state="not_exists"), subscription, clock.now)
        assert (decision.status_code, decision.action) == (200, WebhookAction.IGNORE)


class TestTimeChanged:
    """Reschedule detection tolerance."""

    def test_beyond_tolerance(self):
        assert time_changed(at("2024-01-15T10:00"), at("2024-01-15T10:00") + timedelta(seconds=61), 60)

    def test_within_tolerance(self):
        assert not time_changed(at("2024-01-15T10:00"), at("2024-01-15T10:00") + timedelta(seconds=30), 60)

    def test_missing_values(self):
        assert time_changed(None, at("2024-01-15T10:00"), 60)
        assert not time_changed(at("2024-01-15T10:00"), None, 60)


class TestCalendarSyncProcessor:
    """Applying provider deltas to stored events and linked tasks."""

    @pytest.fixture
    def processor(self, fake_client, clock):
        return CalendarSyncProcessor(client_factory=fake_client.factory, clock=clock)

    @pytest.fixture
    def scheduled_task(self, make_task):
        return make_task(
            calendar_event_id="evt-100",
            calendar_id="primary",
            scheduled_start=at("2024-01-16T10:00"),
            scheduled_end=at("2024-01-16T11:00"),
            sync_status="synced"
        )

    @pytest.mark.asyncio
    async def test_first_sync_fetches_linked_events_and_stores_cursor(self, processor, fake_client,
                                                                      db_session, sample_user):
        user_id = str(sample_user.id)
        fake_client.list_responses = [
            {"items": [_event("ext-1", "2024-01-16T09:00:00Z", "2024-01-16T09:30:00Z")], "nextSyncToken": "tok-1"},
            {"items": [], "nextSyncToken": "tok-2"},
        ]

        first = await processor.process_changes(db_session, user_id, "primary")
        assert first.full_resync is True
        assert first.events_updated == 1
        assert fake_client.list_calls[0]["sync_token"] is None
        assert fake_client.list_calls[0]["privateExtendedProperty"] == f"{TASK_ID_KEY}=*"

        second = await processor.process_changes(db_session, user_id, "primary")
        assert second.full_resync is False
        assert fake_client.list_calls[1]["sync_token"] == "tok-1"

        cursor = db_session.query(SyncCursor).one()
        assert cursor.sync_token == "tok-2"

    @pytest.mark.asyncio
    async def test_expired_cursor_triggers_full_resync(self, processor, fake_client, db_session, sample_user):
        user_id = str(sample_user.id)
        db_session.add(SyncCursor(user_id=user_id, calendar_id="primary", sync_token="stale"))
        db_session.commit()
        fake_client.list_responses = [
            SyncCursorExpired("Sync token is no longer valid"),
            {"items": [], "nextSyncToken": "fresh"},
        ]

        result = await processor.process_changes(db_session, user_id, "primary")

        assert result.full_resync is True
        assert fake_client.list_calls[0]["sync_token"] == "stale"
        assert fake_client.list_calls[1]["sync_token"] is None
        assert "privateExtendedProperty" in fake_client.list_calls[1]
        assert db_session.query(SyncCursor).one().sync_token == "fresh"

    @pytest.mark.asyncio
    async def test_deleted_event_unschedules_task(self, processor, fake_client, db_session,
                                                  sample_user, scheduled_task, clock):
        user_id = str(sample_user.id)
        deletion = {"items": [{"id": "evt-100", "status": "cancelled"}], "nextSyncToken": "tok-1"}
        fake_client.list_responses = [deletion, dict(deletion)]

        result = await processor.process_changes(db_session, user_id, "primary")
        assert result.tasks_updated == 1

        db_session.refresh(scheduled_task)
        assert scheduled_task.calendar_event_id is None
        assert scheduled_task.scheduled_start is None
        assert scheduled_task.unscheduled_reason == "calendar_event_deleted"
        assert as_utc(scheduled_task.unscheduled_at) == clock.now

        # Redelivery of the same deletion changes nothing
        clock.now = clock.now + timedelta(minutes=5)
        repeat = await processor.process_changes(db_session, user_id, "primary")
        assert repeat.tasks_updated == 0
        db_session.refresh(scheduled_task)
        assert as_utc(scheduled_task.unscheduled_at) == at("2024-01-15T08:00")

    @pytest.mark.asyncio
    async def test_moved_event_reschedules_task(self, processor, fake_client, db_session,
                                                sample_user, scheduled_task):
        fake_client.list_responses = [{
            "items": [_event("evt-100", "2024-01-16T14:00:00Z", "2024-01-16T15:00:00Z", task_id=scheduled_task.id)],
            "nextSyncToken": "tok-1",
        }]

        result = await processor.process_changes(db_session, str(sample_user.id), "primary")

        assert result.tasks_updated == 1
        db_session.refresh(scheduled_task)
        assert as_utc(scheduled_task.scheduled_start) == at("2024-01-16T14:00")
        assert as_utc(scheduled_task.scheduled_end) == at("2024-01-16T15:00")
        assert scheduled_task.rescheduled_externally is True

    @pytest.mark.asyncio
    async def test_small_shift_is_not_a_reschedule(self, processor, fake_client, db_session,
                                                   sample_user, scheduled_task):
        fake_client.list_responses = [{
            "items": [_event("evt-100", "2024-01-16T10:00:30Z", "2024-01-16T11:00:30Z", task_id=scheduled_task.id)],
        }]

        result = await processor.process_changes(db_session, str(sample_user.id), "primary")

        assert result.tasks_updated == 0
        db_session.refresh(scheduled_task)
        assert as_utc(scheduled_task.scheduled_start) == at("2024-01-16T10:00")
        assert not scheduled_task.rescheduled_externally

    @pytest.mark.asyncio
    async def test_stale_event_for_other_task_event_is_ignored(self, processor, fake_client, db_session,
                                                               sample_user, scheduled_task):
        fake_client.list_responses = [{
            "items": [_event("evt-old", "2024-01-16T14:00:00Z", "2024-01-16T15:00:00Z",
                             task_id=scheduled_task.id, status="cancelled")],
        }]

        result = await processor.process_changes(db_session, str(sample_user.id), "primary")

        assert result.tasks_updated == 0
        db_session.refresh(scheduled_task)
        assert scheduled_task.calendar_event_id == "evt-100"

    @pytest.mark.asyncio
    async def test_deleted_buffer_only_clears_reference(self, processor, fake_client, db_session,
                                                        sample_user, make_task):
        task = make_task(
            calendar_event_id="evt-100",
            calendar_id="primary",
            scheduled_start=at("2024-01-16T10:00"),
            scheduled_end=at("2024-01-16T11:00"),
            buffer_before_event_id="buf-1"
        )
        fake_client.list_responses = [{
            "items": [_event("buf-1", "2024-01-16T09:45:00Z", "2024-01-16T10:00:00Z",
                             task_id=task.id, status="cancelled", buffer_type="before")],
        }]

        result = await processor.process_changes(db_session, str(sample_user.id), "primary")

        assert result.tasks_updated == 1
        db_session.refresh(task)
        assert task.buffer_before_event_id is None
        assert task.calendar_event_id == "evt-100"

    @pytest.mark.asyncio
    async def test_full_sync_replaces_stored_events(self, processor, fake_client, db_session, sample_user):
        user_id = str(sample_user.id)
        db_session.add(CalendarEvent(
            user_id=user_id, calendar_id="primary", provider_event_id="gone",
            start_time=at("2024-01-16T09:00"), end_time=at("2024-01-16T10:00")
        ))
        db_session.commit()
        fake_client.list_responses = [{
            "items": [_event("ext-1", "2024-01-16T12:00:00Z", "2024-01-16T13:00:00Z")],
            "nextSyncToken": "tok-1",
        }]

        result = await processor.sync_calendar_events(db_session, user_id, "primary", full_sync=True)

        assert result.full_resync is True
        ids = [e.provider_event_id for e in db_session.query(CalendarEvent).all()]
        assert ids == ["ext-1"]
        assert "privateExtendedProperty" not in fake_client.list_calls[0]

    @pytest.mark.asyncio
    async def test_single_event_missing_at_provider(self, processor, db_session, sample_user, scheduled_task):
        handled = await processor.process_single_event(db_session, str(sample_user.id), "primary", "evt-100")

        assert handled is True
        db_session.refresh(scheduled_task)
        assert scheduled_task.calendar_event_id is None
        assert scheduled_task.unscheduled_reason == "calendar_event_deleted"

    @pytest.mark.asyncio
    async def test_last_sync_time_tracks_cursor(self, processor, fake_client, clock, db_session, sample_user):
        user_id = str(sample_user.id)
        assert processor.get_last_sync_time(db_session, user_id, "primary") is None

        fake_client.list_responses = [{"items": [], "nextSyncToken": "tok-1"}]
        await processor.process_changes(db_session, user_id, "primary")

        assert processor.get_last_sync_time(db_session, user_id, "primary") == clock.now

    @pytest.mark.asyncio
    async def test_clear_sync_token(self, processor, db_session, sample_user):
        user_id = str(sample_user.id)
        assert await processor.clear_sync_token(db_session, user_id, "primary") is False
        db_session.add(SyncCursor(user_id=user_id, calendar_id="primary", sync_token="tok"))
        db_session.commit()
        assert await processor.clear_sync_token(db_session, user_id, "primary") is True
        assert db_session.query(SyncCursor).count() == 0


class TestCursorSerialization:
    """Cursor read-fetch-write is serialized across processor instances sharing Redis."""

    @pytest.fixture
    def api_processor(self, fake_client, fake_redis, clock):
        return CalendarSyncProcessor(
            client_factory=fake_client.factory, clock=clock,
            locks=RedisKeyedLock("sync-cursor", redis_client=fake_redis)
        )

    @pytest.fixture
    def worker_processor(self, fake_client, fake_redis, clock):
        return CalendarSyncProcessor(
            client_factory=fake_client.factory, clock=clock,
            locks=RedisKeyedLock("sync-cursor", redis_client=fake_redis)
        )

    @pytest.mark.asyncio
    async def test_webhook_and_worker_sync_do_not_share_a_stale_cursor(self, api_processor, worker_processor,
                                                                        fake_client, fake_redis,
                                                                        db_session, sample_user):
        user_id = str(sample_user.id)
        db_session.add(SyncCursor(user_id=user_id, calendar_id="primary", sync_token="tok-0"))
        db_session.commit()
        fake_client.list_delay = 0.05
        fake_client.list_responses = [
            {"items": [], "nextSyncToken": "tok-1"},
            {"items": [], "nextSyncToken": "tok-2"},
        ]

        await asyncio.gather(
            api_processor.process_changes(db_session, user_id, "primary"),
            worker_processor.sync_calendar_events(db_session, user_id, "primary"),
        )

        assert [call["sync_token"] for call in fake_client.list_calls] == ["tok-0", "tok-1"]
        assert db_session.query(SyncCursor).one().sync_token == "tok-2"
        assert fake_redis.acquired == [f"sync-cursor:{user_id}:primary"] * 2

    @pytest.mark.asyncio
    async def test_clearing_cursor_waits_for_running_sync(self, api_processor, worker_processor, fake_client,
                                                          db_session, sample_user):
        user_id = str(sample_user.id)
        db_session.add(SyncCursor(user_id=user_id, calendar_id="primary", sync_token="tok-0"))
        db_session.commit()
        fake_client.list_delay = 0.05
        fake_client.list_responses = [{"items": [], "nextSyncToken": "tok-1"}]

        _, cleared = await asyncio.gather(
            worker_processor.process_changes(db_session, user_id, "primary"),
            api_processor.clear_sync_token(db_session, user_id, "primary"),
        )

        assert cleared is True
        assert db_session.query(SyncCursor).count() == 0


class TestHandleNotification:
    """End-to-end webhook handling against the fake provider."""

    @pytest.fixture
    def processor(self, fake_client, clock):
        return CalendarSyncProcessor(client_factory=fake_client.factory, clock=clock)

    @pytest.fixture
    def subscription(self, db_session, sample_user, clock):
        subscription = WatchSubscription(
            id="channel-1",
            resource_id="res-1",
            user_id=sample_user.id,
            calendar_id="primary",
            channel_token=make_channel_token(str(sample_user.id), "primary"),
            expiration=clock.now + timedelta(days=3)
        )
        db_session.add(subscription)
        db_session.commit()
        return subscription

    @pytest.mark.asyncio
    async def test_change_notification_runs_sync(self, processor, fake_client, db_session, subscription):
        headers = _headers(token=subscription.channel_token)

        decision = await processor.handle_notification(db_session, headers)

        assert decision.status_code == 200
        assert decision.action == WebhookAction.SYNC
        assert len(fake_client.list_calls) == 1

    @pytest.mark.asyncio
    async def test_revoked_credentials_answer_unauthorized(self, processor, fake_client, db_session, subscription):
        fake_client.list_responses = [AuthenticationExpired()]

        decision = await processor.handle_notification(db_session, _headers(token=subscription.channel_token))

        assert decision.status_code == 401

    @pytest.mark.asyncio
    async def test_sync_failure_is_still_acknowledged(self, processor, fake_client, db_session, subscription):
        fake_client.list_responses = [RuntimeError("provider exploded")]

        decision = await processor.handle_notification(db_session, _headers(token=subscription.channel_token))

        assert decision.status_code == 200

    @pytest.mark.asyncio
    async def test_expired_cursor_recovers_within_notification(self, processor, fake_client, db_session,
                                                               sample_user, subscription, make_task):
        user_id = str(sample_user.id)
        task = make_task(
            calendar_event_id="evt-100",
            calendar_id="primary",
            scheduled_start=at("2024-01-16T10:00"),
            scheduled_end=at("2024-01-16T11:00"),
            sync_status="synced"
        )
        db_session.add(SyncCursor(user_id=user_id, calendar_id="primary", sync_token="stale"))
        db_session.commit()
        moved = _event("evt-100", "2024-01-16T12:00:00Z", "2024-01-16T13:00:00Z", task_id=str(task.id))
        fake_client.list_responses = [
            SyncCursorExpired("Sync token is no longer valid"),
            {"items": [moved], "nextSyncToken": "fresh"},
        ]

        decision = await processor.handle_notification(db_session, _headers(token=subscription.channel_token))

        assert (decision.status_code, decision.action) == (200, WebhookAction.SYNC)
        assert [call["sync_token"] for call in fake_client.list_calls] == ["stale", None]
        assert fake_client.list_calls[1]["privateExtendedProperty"] == f"{TASK_ID_KEY}=*"
        assert db_session.query(SyncCursor).one().sync_token == "fresh"
        db_session.refresh(task)
        assert as_utc(task.scheduled_start) == at("2024-01-16T12:00")
        assert task.rescheduled_externally is True
