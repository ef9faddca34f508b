# donor_alerts/infra/memory_store.py
"""
Dict-backed stores for local runs (STORE_BACKEND=memory) and tests.
Records are copied on the way in and out so callers never share state
with the store.
"""
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from donor_alerts.errors import ConflictError, StoreError
from donor_alerts.infra.stores import (
    ProfileStore,
    QueueStore,
    RequestStore,
    check_lookup_size,
)
from donor_alerts.models.donation_request import (
    EXPIRABLE_STATUSES,
    DonationRequest,
    RequestStatus,
)
from donor_alerts.models.queued_notification import QueuedNotification
from donor_alerts.models.user_profile import UserProfile


class InMemoryRequestStore(RequestStore):
    def __init__(self):
        self.records: Dict[str, DonationRequest] = {}

    async def get(self, request_id: str) -> Optional[DonationRequest]:
        record = self.records.get(request_id)
        return record.model_copy(deep=True) if record else None

    async def create(self, request: DonationRequest) -> None:
        self.records[request.id] = request.model_copy(deep=True)

    async def save(
        self, request: DonationRequest, expected_status: Optional[RequestStatus] = None
    ) -> None:
        if expected_status is not None:
            current = self.records.get(request.id)
            if current is None or current.status != expected_status:
                raise ConflictError(
                    f"Request {request.id} is no longer {expected_status.value}"
                )
        self.records[request.id] = request.model_copy(deep=True)

    async def find_expirable(self, now: datetime) -> List[DonationRequest]:
        return [
            r.model_copy(deep=True)
            for r in self.records.values()
            if r.status in EXPIRABLE_STATUSES and r.expiresAt <= now
        ]

    async def expire_batch(self, request_ids: Iterable[str], expired_at: datetime) -> int:
        ids = list(request_ids)
        missing = [i for i in ids if i not in self.records]
        if missing:
            # all or nothing
            raise StoreError(f"Unknown request ids in batch: {missing}")
        expired = 0
        for request_id in ids:
            if self.records[request_id].status not in EXPIRABLE_STATUSES:
                continue
            self.records[request_id] = self.records[request_id].model_copy(
                update={
                    "status": RequestStatus.EXPIRED,
                    "expiredAt": expired_at,
                    "potentialDonors": [],
                }
            )
            expired += 1
        return expired


class InMemoryProfileStore(ProfileStore):
    def __init__(self):
        self.records: Dict[str, UserProfile] = {}

    async def get(self, user_id: str) -> Optional[UserProfile]:
        record = self.records.get(user_id)
        return record.model_copy(deep=True) if record else None

    async def get_many(self, user_ids: List[str]) -> List[UserProfile]:
        check_lookup_size(user_ids)
        return [
            self.records[i].model_copy(deep=True) for i in user_ids if i in self.records
        ]

    async def upsert(self, profile: UserProfile) -> None:
        self.records[profile.id] = profile.model_copy(deep=True)


class InMemoryQueueStore(QueueStore):
    def __init__(self):
        self.records: Dict[str, QueuedNotification] = {}

    async def append(self, record: QueuedNotification) -> bool:
        if record.id in self.records:
            return False
        self.records[record.id] = record.model_copy(deep=True)
        return True

    async def get(self, notification_id: str) -> Optional[QueuedNotification]:
        record = self.records.get(notification_id)
        return record.model_copy(deep=True) if record else None

    async def mark_processed(
        self,
        notification_id: str,
        processed_at: datetime,
        response=None,
        error: Optional[str] = None,
        error_code: Optional[str] = None,
    ) -> bool:
        record = self.records.get(notification_id)
        if record is None or record.processed:
            return False
        self.records[notification_id] = record.model_copy(
            update={
                "processed": True,
                "processedAt": processed_at,
                "response": response,
                "error": error,
                "errorCode": error_code,
            }
        )
        return True

    async def find_processed_before(self, cutoff: datetime) -> List[QueuedNotification]:
        return [
            r.model_copy(deep=True)
            for r in self.records.values()
            if r.processed and r.createdAt < cutoff
        ]

    async def find_failed_since(self, since: datetime) -> List[QueuedNotification]:
        return [
            r.model_copy(deep=True)
            for r in self.records.values()
            if r.processed and r.error is not None and r.createdAt >= since
        ]

    async def find_unprocessed_before(self, cutoff: datetime) -> List[QueuedNotification]:
        return [
            r.model_copy(deep=True)
            for r in self.records.values()
            if not r.processed and r.createdAt < cutoff
        ]

    async def delete_batch(self, notification_ids: Iterable[str]) -> int:
        deleted = 0
        for notification_id in list(notification_ids):
            if self.records.pop(notification_id, None) is not None:
                deleted += 1
        return deleted
