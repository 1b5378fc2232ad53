"""
Unit tests for watch channel lifecycle.
"""
from datetime import timedelta

import pytest

from brain_dumper.core.exceptions import AuthenticationExpired, ProviderNotFound
from brain_dumper.database.models import WatchSubscription
from brain_dumper.services.watch_manager import (
    WatchChannelManager, make_channel_id, make_channel_token, needs_renewal, validate_token
)

from conftest import at


def _subscription(db_session, user, expiration, channel_id="channel-1", calendar_id="primary"):
    subscription = WatchSubscription(
        id=channel_id,
        resource_id=f"res-{channel_id}",
        user_id=user.id,
        calendar_id=calendar_id,
        channel_token=make_channel_token(str(user.id), calendar_id),
        expiration=expiration
    )
    db_session.add(subscription)
    db_session.commit()
    return subscription


class TestChannelHelpers:
    """Channel ids, tokens and renewal thresholds."""

    def test_channel_id_sanitizes_calendar_id(self):
        created = at("2024-01-15T08:00")
        channel_id = make_channel_id("u1", "team@group.calendar.google.com", created)
        expected_ms = int(created.timestamp() * 1000)
        assert channel_id == f"brain-dumper-u1-team_group_calendar_google_com-{expected_ms}"

    def test_token_must_match_exactly(self, db_session, sample_user, clock):
        subscription = _subscription(db_session, sample_user, clock.now + timedelta(days=7))
        assert validate_token(f"{sample_user.id}:primary", subscription)
        assert not validate_token(f"{sample_user.id}:other", subscription)
        assert not validate_token("", subscription)
        assert not validate_token(None, subscription)

    def test_needs_renewal_inside_threshold(self, db_session, sample_user, clock):
        subscription = _subscription(db_session, sample_user, clock.now + timedelta(hours=12))
        assert needs_renewal(subscription, 24, now=clock.now)

    def test_no_renewal_far_from_expiry(self, db_session, sample_user, clock):
        subscription = _subscription(db_session, sample_user, clock.now + timedelta(days=7))
        assert not needs_renewal(subscription, 24, now=clock.now)

    def test_needs_renewal_is_monotonic_in_threshold(self, db_session, sample_user, clock):
        subscription = _subscription(db_session, sample_user, clock.now + timedelta(hours=30))
        results = [needs_renewal(subscription, hours, now=clock.now) for hours in (1, 12, 24, 29, 30, 48, 200)]
        assert results == sorted(results)
        assert results[-1] is True


class TestWatchChannelManager:
    """Creating, stopping and renewing channels against a fake provider."""

    @pytest.fixture
    def manager(self, fake_client, clock):
        return WatchChannelManager(client_factory=fake_client.factory, clock=clock)

    @pytest.mark.asyncio
    async def test_create_stores_subscription(self, manager, fake_client, db_session, sample_user, clock):
        subscription = await manager.create(db_session, str(sample_user.id), "primary")

        assert subscription.id.startswith(f"brain-dumper-{sample_user.id}-primary-")
        assert subscription.resource_id == f"res-{subscription.id}"
        assert subscription.channel_token == f"{sample_user.id}:primary"
        assert fake_client.watch_calls[0]["address"] == "https://hooks.example.com/api/v1/webhooks/calendar"
        assert fake_client.watch_calls[0]["token"] == f"{sample_user.id}:primary"

        stored = db_session.query(WatchSubscription).one()
        assert stored.id == subscription.id

    @pytest.mark.asyncio
    async def test_stop_treats_missing_channel_as_stopped(self, manager, fake_client, db_session, sample_user, clock):
        subscription = _subscription(db_session, sample_user, clock.now + timedelta(days=1))
        fake_client.stop_error = ProviderNotFound("stop_channel: resource not found")

        assert await manager.stop(db_session, subscription) is True
        assert db_session.query(WatchSubscription).count() == 0

    @pytest.mark.asyncio
    async def test_stop_keeps_record_on_provider_failure(self, manager, fake_client, db_session, sample_user, clock):
        subscription = _subscription(db_session, sample_user, clock.now + timedelta(days=1))
        fake_client.stop_error = RuntimeError("boom")

        assert await manager.stop(db_session, subscription) is False
        assert db_session.query(WatchSubscription).count() == 1

    @pytest.mark.asyncio
    async def test_stop_without_credentials_drops_record(self, manager, fake_client, db_session, sample_user, clock):
        subscription = _subscription(db_session, sample_user, clock.now + timedelta(days=1))
        fake_client.stop_error = AuthenticationExpired()

        assert await manager.stop(db_session, subscription) is False
        assert db_session.query(WatchSubscription).count() == 0

    @pytest.mark.asyncio
    async def test_renew_expiring_only_touches_expiring_channels(self, manager, fake_client, db_session,
                                                                 sample_user, clock):
        _subscription(db_session, sample_user, clock.now + timedelta(hours=12), channel_id="expiring")
        _subscription(db_session, sample_user, clock.now + timedelta(days=7), channel_id="fresh",
                      calendar_id="work")

        result = await manager.renew_expiring(db_session, threshold_hours=24)

        assert result.renewed == 1
        assert result.failed == 0
        assert fake_client.stopped_channels == ["expiring"]
        ids = {s.id for s in db_session.query(WatchSubscription).all()}
        assert "expiring" not in ids
        assert "fresh" in ids
        assert len(ids) == 2

    @pytest.mark.asyncio
    async def test_stop_all_for_user(self, manager, db_session, sample_user, clock):
        _subscription(db_session, sample_user, clock.now + timedelta(days=1), channel_id="a")
        _subscription(db_session, sample_user, clock.now + timedelta(days=1), channel_id="b", calendar_id="work")

        result = await manager.stop_all_for_user(db_session, str(sample_user.id))

        assert result.stopped == 2
        assert result.failed == 0
        assert manager.get_for_user(db_session, str(sample_user.id)) == []
