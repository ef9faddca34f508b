# donor_alerts/models/donation_request.py
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from pydantic import BaseModel, Field, field_validator


class Urgency(str, Enum):
    NORMAL = "normal"
    EMERGENCY = "emergency"


class RequestStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    ACCEPTED = "accepted"
    EXPIRED = "expired"


# pending -> active -> {accepted, expired}; pending may skip straight to a final state
ALLOWED_TRANSITIONS: Dict[RequestStatus, FrozenSet[RequestStatus]] = {
    RequestStatus.PENDING: frozenset(
        {RequestStatus.ACTIVE, RequestStatus.ACCEPTED, RequestStatus.EXPIRED}
    ),
    RequestStatus.ACTIVE: frozenset({RequestStatus.ACCEPTED, RequestStatus.EXPIRED}),
    RequestStatus.ACCEPTED: frozenset(),
    RequestStatus.EXPIRED: frozenset(),
}

# statuses the expiry sweeper is allowed to pick up
EXPIRABLE_STATUSES = (RequestStatus.PENDING, RequestStatus.ACTIVE)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes are taken to be UTC; aware ones are converted to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class DonationRequest(BaseModel):
    id: str
    bloodType: str
    city: str = ""
    urgency: Urgency = Urgency.NORMAL
    units: int = Field(default=1, ge=1)
    status: RequestStatus = RequestStatus.PENDING
    requesterId: str
    acceptedBy: Optional[str] = None
    acceptedByName: Optional[str] = None
    potentialDonors: List[str] = Field(default_factory=list)
    expiresAt: datetime
    createdAt: datetime = Field(default_factory=utcnow)
    expiredAt: Optional[datetime] = None

    @field_validator("expiresAt", "createdAt", "expiredAt")
    @classmethod
    def normalize_timestamps(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)

    def can_transition(self, target: RequestStatus) -> bool:
        return target in ALLOWED_TRANSITIONS[self.status]

    def donor_ids(self) -> List[str]:
        """potentialDonors without duplicates, first occurrence wins."""
        return list(dict.fromkeys(self.potentialDonors))
