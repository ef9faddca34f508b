# donor_alerts/infra/stores.py
"""
Storage interfaces used by the pipeline. Two backends implement them:
infra/table_client.py (Azure Table Storage) and infra/memory_store.py.
Every method may raise StoreError.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable, List, Optional

from donor_alerts.models.donation_request import DonationRequest, RequestStatus
from donor_alerts.models.queued_notification import QueuedNotification
from donor_alerts.models.user_profile import UserProfile

# backing-store limit for "id in (...)" lookups
MAX_IDS_PER_LOOKUP = 10


class RequestStore(ABC):
    @abstractmethod
    async def get(self, request_id: str) -> Optional[DonationRequest]:
        ...

    @abstractmethod
    async def create(self, request: DonationRequest) -> None:
        ...

    @abstractmethod
    async def save(
        self, request: DonationRequest, expected_status: Optional[RequestStatus] = None
    ) -> None:
        """
        Replaces the stored record. With `expected_status` the write only
        happens if the stored status still is that value, otherwise
        ConflictError.
        """

    @abstractmethod
    async def find_expirable(self, now: datetime) -> List[DonationRequest]:
        """status in (pending, active) and expiresAt <= now."""

    @abstractmethod
    async def expire_batch(self, request_ids: Iterable[str], expired_at: datetime) -> int:
        """
        Sets status=expired, expiredAt and clears potentialDonors for the ids
        in one transaction. Ids whose stored status is no longer pending or
        active are skipped. Returns how many records were written.
        """


class ProfileStore(ABC):
    @abstractmethod
    async def get(self, user_id: str) -> Optional[UserProfile]:
        ...

    @abstractmethod
    async def get_many(self, user_ids: List[str]) -> List[UserProfile]:
        """At most MAX_IDS_PER_LOOKUP ids; unknown ids are left out."""

    @abstractmethod
    async def upsert(self, profile: UserProfile) -> None:
        ...


class QueueStore(ABC):
    @abstractmethod
    async def append(self, record: QueuedNotification) -> bool:
        """Insert-if-absent. False when a record with the same id exists."""

    @abstractmethod
    async def get(self, notification_id: str) -> Optional[QueuedNotification]:
        ...

    @abstractmethod
    async def mark_processed(
        self,
        notification_id: str,
        processed_at: datetime,
        response=None,
        error: Optional[str] = None,
        error_code: Optional[str] = None,
    ) -> bool:
        """
        Flips processed to True and stores the outcome. False (and no write)
        when the record is missing or was already processed.
        """

    @abstractmethod
    async def find_processed_before(self, cutoff: datetime) -> List[QueuedNotification]:
        ...

    @abstractmethod
    async def find_failed_since(self, since: datetime) -> List[QueuedNotification]:
        """Processed records carrying an error, created at or after `since`."""

    @abstractmethod
    async def find_unprocessed_before(self, cutoff: datetime) -> List[QueuedNotification]:
        ...

    @abstractmethod
    async def delete_batch(self, notification_ids: Iterable[str]) -> int:
        ...


def check_lookup_size(user_ids: List[str]) -> None:
    if len(user_ids) > MAX_IDS_PER_LOOKUP:
        raise ValueError(
            f"At most {MAX_IDS_PER_LOOKUP} ids per lookup, got {len(user_ids)}"
        )
