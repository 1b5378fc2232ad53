"""
HTTP-level tests: webhook status codes, authentication and error mapping.
"""
from datetime import datetime, timedelta, timezone

import jwt
import pytest
from fastapi.testclient import TestClient

from brain_dumper.config import settings
from brain_dumper.core.exceptions import (
    AuthenticationExpired, BrainDumperError, NoAvailableSlot, PartialCommitFailure, ProposalNotFound,
    SyncCursorExpired, TransientNetworkError, ValidationError
)
from brain_dumper.database.base import get_db
from brain_dumper.database.models import WatchSubscription
from brain_dumper.main import app, status_for
from brain_dumper.schemas.scheduling import ConfirmResult
from brain_dumper.services.watch_manager import make_channel_token


def make_token(sub, expires_in=timedelta(hours=1)):
    payload = {"sub": sub, "exp": datetime.now(timezone.utc) + expires_in}
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


@pytest.fixture
def client(db_session):
    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers(sample_user):
    return {"Authorization": f"Bearer {make_token(str(sample_user.id))}"}


class TestWebhookEndpoint:
    URL = "/api/v1/webhooks/calendar"

    @pytest.fixture
    def subscription(self, db_session, sample_user):
        subscription = WatchSubscription(
            id="channel-1",
            resource_id="res-1",
            user_id=sample_user.id,
            calendar_id="primary",
            channel_token=make_channel_token(str(sample_user.id), "primary"),
            expiration=datetime.now(timezone.utc) - timedelta(hours=1)
        )
        db_session.add(subscription)
        db_session.commit()
        return subscription

    def test_get_is_not_allowed(self, client):
        response = client.get(self.URL)
        assert response.status_code == 405

    def test_missing_headers(self, client):
        response = client.post(self.URL, headers={"X-Goog-Resource-State": "exists"})
        assert response.status_code == 400
        assert response.text == "Missing channel ID"

    def test_sync_handshake(self, client):
        response = client.post(self.URL, headers={"X-Goog-Channel-ID": "c", "X-Goog-Resource-State": "sync"})
        assert response.status_code == 200

    def test_unknown_channel_is_acknowledged(self, client):
        response = client.post(self.URL, headers={"X-Goog-Channel-ID": "nope", "X-Goog-Resource-State": "exists"})
        assert response.status_code == 200
        assert response.text == "Unknown channel"

    def test_invalid_token(self, client, subscription):
        response = client.post(self.URL, headers={
            "X-Goog-Channel-ID": "channel-1",
            "X-Goog-Resource-State": "exists",
            "X-Goog-Channel-Token": "forged",
        })
        assert response.status_code == 403

    def test_expired_channel_is_queued_for_renewal(self, client, subscription, monkeypatch):
        queued = []

        class FakeTask:
            @staticmethod
            def delay(channel_id):
                queued.append(channel_id)

        monkeypatch.setattr("brain_dumper.api.v1.webhooks.renew_watch", FakeTask)

        response = client.post(self.URL, headers={
            "X-Goog-Channel-ID": "channel-1",
            "X-Goog-Resource-State": "exists",
            "X-Goog-Channel-Token": subscription.channel_token,
        })

        assert response.status_code == 200
        assert queued == ["channel-1"]


class TestAuthentication:

    def test_missing_token(self, client):
        response = client.get("/api/v1/calendar/watches")
        assert response.status_code == 401
        assert response.json()["detail"] == "Authentication required"

    def test_expired_token(self, client, sample_user):
        token = make_token(str(sample_user.id), expires_in=timedelta(hours=-1))
        response = client.get("/api/v1/calendar/watches", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401
        assert response.json()["detail"] == "Token has expired"

    def test_garbage_token(self, client):
        response = client.get("/api/v1/calendar/watches", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid token"

    def test_unknown_user(self, client, db_session):
        response = client.get("/api/v1/calendar/watches", headers={"Authorization": f"Bearer {make_token('ghost')}"})
        assert response.status_code == 401
        assert response.json()["detail"] == "User not found"

    def test_valid_token(self, client, auth_headers):
        response = client.get("/api/v1/calendar/watches", headers=auth_headers)
        assert response.status_code == 200
        assert response.json() == []


class TestErrorMapping:

    def test_status_for(self):
        assert status_for(ValidationError("bad")) == 400
        assert status_for(AuthenticationExpired()) == 401
        assert status_for(ProposalNotFound("p1")) == 404
        assert status_for(NoAvailableSlot("t1", "no room")) == 409
        assert status_for(SyncCursorExpired("gone")) == 409
        assert status_for(TransientNetworkError("busy", status=503)) == 503
        assert status_for(PartialCommitFailure(ConfirmResult(proposal_id="p1", success=False))) == 207
        assert status_for(BrainDumperError("boom")) == 500

    def test_missing_proposal_is_404(self, client, auth_headers):
        response = client.get("/api/v1/scheduling/proposals/does-not-exist", headers=auth_headers)
        assert response.status_code == 404
        assert response.json()["error"] == "ProposalNotFound"

    def test_request_validation_is_422(self, client, auth_headers):
        response = client.post("/api/v1/scheduling/suggestions", json={"task_id": "t1", "count": 0},
                               headers=auth_headers)
        assert response.status_code == 422
        assert response.json()["errors"][0]["field"] == "count"

    def test_reversed_availability_range_is_422(self, client, auth_headers):
        response = client.post("/api/v1/calendar/availability", headers=auth_headers, json={
            "start_date": "2024-01-16", "end_date": "2024-01-15"
        })
        assert response.status_code == 422

    def test_unknown_timezone_is_400(self, client, auth_headers):
        response = client.post("/api/v1/calendar/availability", headers=auth_headers, json={
            "start_date": "2024-01-15", "end_date": "2024-01-16", "timezone": "Mars/Olympus_Mons"
        })
        assert response.status_code == 400
        assert response.json()["error"] == "ValidationError"

    def test_health_carries_correlation_id(self, client):
        response = client.get("/health", headers={"X-Correlation-ID": "abc-123"})
        assert response.status_code == 200
        assert response.headers["X-Correlation-ID"] == "abc-123"
