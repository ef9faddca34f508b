# donor_alerts/models/events.py
import uuid
from datetime import datetime
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, Field

from donor_alerts.models.donation_request import DonationRequest, utcnow


class DomainEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    occurred_at: datetime = Field(default_factory=utcnow)


class RequestCreated(DomainEvent):
    request: DonationRequest


class RequestStatusChanged(DomainEvent):
    request_id: str
    before: DonationRequest
    after: DonationRequest


class NotificationQueued(DomainEvent):
    notification_id: str


AnyEvent = Union[RequestCreated, RequestStatusChanged, NotificationQueued]


def parse_event(payload: Dict[str, Any]) -> AnyEvent:
    """
    Builds a domain event from a JSON message of the external event feed.
    Expected shapes:
      {"type": "RequestCreated", "request": {...}}
      {"type": "RequestStatusChanged", "requestId": "...", "before": {...}, "after": {...}}
      {"type": "NotificationQueued", "notificationId": "..."}
    Raises ValueError for anything else.
    """
    event_type = payload.get("type")
    extra: Dict[str, Any] = {}
    event_id: Optional[str] = payload.get("eventId")
    if event_id:
        extra["event_id"] = event_id

    if event_type == "RequestCreated":
        return RequestCreated(request=DonationRequest.model_validate(payload["request"]), **extra)
    if event_type == "RequestStatusChanged":
        after = DonationRequest.model_validate(payload["after"])
        return RequestStatusChanged(
            request_id=payload.get("requestId") or after.id,
            before=DonationRequest.model_validate(payload["before"]),
            after=after,
            **extra,
        )
    if event_type == "NotificationQueued":
        return NotificationQueued(notification_id=payload["notificationId"], **extra)
    raise ValueError(f"Unknown event type: {event_type!r}")
