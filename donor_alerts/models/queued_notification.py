# donor_alerts/models/queued_notification.py
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator

from donor_alerts.models.donation_request import as_utc, utcnow


class Priority(str, Enum):
    NORMAL = "normal"
    HIGH = "high"


class QueuedNotification(BaseModel):
    """
    One push-delivery attempt. Written once unprocessed, marked processed
    exactly once by the delivery worker, then only ever deleted.
    """

    id: str
    token: Optional[str] = None
    title: str
    body: str = ""
    data: Dict[str, str] = Field(default_factory=dict)
    createdAt: datetime = Field(default_factory=utcnow)
    processed: bool = False
    processedAt: Optional[datetime] = None
    priority: Priority = Priority.NORMAL
    error: Optional[str] = None
    errorCode: Optional[str] = None
    response: Optional[Any] = None
    attempt: int = 1
    retryOf: Optional[str] = None

    @field_validator("createdAt", "processedAt")
    @classmethod
    def normalize_timestamps(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)

    @property
    def root_id(self) -> str:
        """Id of the first attempt in a requeue chain."""
        return self.id.split("~", 1)[0]
