"""
Shared fixtures: an in-memory runtime with background tasks off, a push
gateway that records what it was asked to send, and small builders for
requests and profiles.
"""
from datetime import datetime, timedelta, timezone

import jwt
import pytest

from donor_alerts.config import Settings
from donor_alerts.errors import GatewayError
from donor_alerts.infra.memory_store import (
    InMemoryProfileStore,
    InMemoryQueueStore,
    InMemoryRequestStore,
)
from donor_alerts.infra.push_gateway import PushGateway
from donor_alerts.models.donation_request import DonationRequest
from donor_alerts.models.user_profile import UserProfile
from donor_alerts.runtime import Runtime

JWT_SECRET = "test-secret"
NOW = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class RecordingGateway(PushGateway):
    def __init__(self, error=None):
        self.sent = []
        self.error = error

    def send(self, message):
        self.sent.append(message)
        if self.error is not None:
            raise self.error
        return f"projects/demo/messages/{len(self.sent)}"


def make_request(**overrides):
    data = {
        "id": "req-1",
        "bloodType": "A+",
        "city": "Kampala",
        "urgency": "normal",
        "units": 1,
        "status": "pending",
        "requesterId": "requester",
        "potentialDonors": [],
        "expiresAt": NOW + timedelta(hours=6),
        "createdAt": NOW,
    }
    data.update(overrides)
    return DonationRequest.model_validate(data)


def make_profile(user_id, token=None, **tags):
    return UserProfile(id=user_id, fcmToken=token, tags=tags)


def make_token(sub="requester", **claims):
    return jwt.encode({"sub": sub, **claims}, JWT_SECRET, algorithm="HS256")


@pytest.fixture
def settings():
    return Settings(
        store_backend="memory",
        jwt_secret=JWT_SECRET,
        background_tasks_enabled=False,
        store_timeout_seconds=2.0,
        gateway_timeout_seconds=2.0,
    )


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
def runtime(settings, gateway):
    return Runtime(
        settings,
        InMemoryRequestStore(),
        InMemoryProfileStore(),
        InMemoryQueueStore(),
        gateway,
    )


@pytest.fixture
def failing_gateway():
    return RecordingGateway(error=GatewayError("Requested entity was not found.", code="unregistered", permanent=True))
