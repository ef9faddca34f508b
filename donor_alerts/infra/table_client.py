# donor_alerts/infra/table_client.py
"""
Azure Table Storage backend for the three stores.

Each table keeps all of its rows in one partition so that batch updates and
deletes can go through a single entity-group transaction (the service caps
a transaction at 100 operations, larger batches are split).
Nested values (lists, dicts) are stored as JSON strings.
"""
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from azure.core import MatchConditions
from azure.core.exceptions import (
    AzureError,
    ResourceExistsError,
    ResourceModifiedError,
    ResourceNotFoundError,
)
from azure.data.tables import TableTransactionError, UpdateMode
from azure.data.tables.aio import TableClient, TableServiceClient

from donor_alerts.config import Settings
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

logger = logging.getLogger(__name__)

REQUEST_PARTITION = "request"
USER_PARTITION = "user"
QUEUE_PARTITION = "queue"

MAX_TRANSACTION_SIZE = 100


@asynccontextmanager
async def _store_errors(operation: str):
    try:
        yield
    except AzureError as e:
        raise StoreError(f"{operation} failed: {e}") from e


def _chunks(items: List[Any], size: int):
    for i in range(0, len(items), size):
        yield items[i:i + size]


def _strip_keys(entity: Dict[str, Any]) -> Dict[str, Any]:
    data = dict(entity)
    data["id"] = data.pop("RowKey")
    data.pop("PartitionKey", None)
    return data


# ---------- entity mapping ----------

def request_to_entity(request: DonationRequest) -> Dict[str, Any]:
    entity = request.model_dump(mode="python", exclude={"id"})
    entity["PartitionKey"] = REQUEST_PARTITION
    entity["RowKey"] = request.id
    entity["urgency"] = request.urgency.value
    entity["status"] = request.status.value
    entity["potentialDonors"] = json.dumps(request.potentialDonors)
    return {k: v for k, v in entity.items() if v is not None}


def entity_to_request(entity: Dict[str, Any]) -> DonationRequest:
    data = _strip_keys(entity)
    donors = data.get("potentialDonors")
    data["potentialDonors"] = json.loads(donors) if donors else []
    return DonationRequest.model_validate(data)


def profile_to_entity(profile: UserProfile) -> Dict[str, Any]:
    entity = {
        "PartitionKey": USER_PARTITION,
        "RowKey": profile.id,
        "tags": json.dumps(profile.tags),
    }
    if profile.fcmToken:
        entity["fcmToken"] = profile.fcmToken
    return entity


def entity_to_profile(entity: Dict[str, Any]) -> UserProfile:
    tags = entity.get("tags")
    return UserProfile(
        id=entity["RowKey"],
        fcmToken=entity.get("fcmToken"),
        tags=json.loads(tags) if tags else {},
    )


def notification_to_entity(record: QueuedNotification) -> Dict[str, Any]:
    entity = record.model_dump(mode="python", exclude={"id"})
    entity["PartitionKey"] = QUEUE_PARTITION
    entity["RowKey"] = record.id
    entity["priority"] = record.priority.value
    entity["data"] = json.dumps(record.data)
    if record.response is not None:
        entity["response"] = json.dumps(record.response)
    return {k: v for k, v in entity.items() if v is not None}


def entity_to_notification(entity: Dict[str, Any]) -> QueuedNotification:
    data = _strip_keys(entity)
    raw = data.get("data")
    data["data"] = json.loads(raw) if raw else {}
    if data.get("response") is not None:
        data["response"] = json.loads(data["response"])
    return QueuedNotification.model_validate(data)


# ---------- client lifecycle ----------

class TableBackend:
    """
    Owns the TableServiceClient. Built once at startup from Settings and
    closed on shutdown.
    """

    def __init__(self, settings: Settings):
        if not settings.azure_storage_connection_string:
            raise RuntimeError("AZURE_STORAGE_CONNECTION_STRING is not set")
        self.settings = settings
        self.service = TableServiceClient.from_connection_string(
            conn_str=settings.azure_storage_connection_string
        )
        self.requests = self.service.get_table_client(table_name=settings.requests_table)
        self.users = self.service.get_table_client(table_name=settings.users_table)
        self.queue = self.service.get_table_client(table_name=settings.queue_table)

    async def ensure_tables(self) -> None:
        async with _store_errors("create tables"):
            for name in (
                self.settings.requests_table,
                self.settings.users_table,
                self.settings.queue_table,
            ):
                await self.service.create_table_if_not_exists(table_name=name)
        logger.info("Table storage ready")

    async def close(self) -> None:
        for client in (self.requests, self.users, self.queue):
            await client.close()
        await self.service.close()


async def _query(table: TableClient, query_filter: str, parameters: Dict[str, Any]) -> List[Dict[str, Any]]:
    entities = table.query_entities(query_filter=query_filter, parameters=parameters)
    return [e async for e in entities]


# ---------- stores ----------

class TableRequestStore(RequestStore):
    def __init__(self, table: TableClient):
        self.table = table

    async def get(self, request_id: str) -> Optional[DonationRequest]:
        async with _store_errors(f"get request {request_id}"):
            try:
                entity = await self.table.get_entity(
                    partition_key=REQUEST_PARTITION, row_key=request_id
                )
            except ResourceNotFoundError:
                return None
        return entity_to_request(entity)

    async def create(self, request: DonationRequest) -> None:
        async with _store_errors(f"create request {request.id}"):
            await self.table.create_entity(entity=request_to_entity(request))

    async def save(
        self, request: DonationRequest, expected_status: Optional[RequestStatus] = None
    ) -> None:
        entity = request_to_entity(request)
        async with _store_errors(f"save request {request.id}"):
            if expected_status is None:
                await self.table.upsert_entity(entity=entity, mode=UpdateMode.REPLACE)
                return

            try:
                current = await self.table.get_entity(
                    partition_key=REQUEST_PARTITION, row_key=request.id
                )
            except ResourceNotFoundError:
                current = None
            if current is None or current.get("status") != expected_status.value:
                raise ConflictError(f"Request {request.id} is no longer {expected_status.value}")

            try:
                await self.table.update_entity(
                    entity=entity,
                    mode=UpdateMode.REPLACE,
                    etag=current.metadata["etag"],
                    match_condition=MatchConditions.IfNotModified,
                )
            except ResourceModifiedError as e:
                raise ConflictError(f"Request {request.id} changed while saving") from e

    async def find_expirable(self, now: datetime) -> List[DonationRequest]:
        async with _store_errors("query expirable requests"):
            entities = await _query(
                self.table,
                "PartitionKey eq @pk and (status eq @pending or status eq @active) "
                "and expiresAt le @now",
                {
                    "pk": REQUEST_PARTITION,
                    "pending": RequestStatus.PENDING.value,
                    "active": RequestStatus.ACTIVE.value,
                    "now": now,
                },
            )
        return [entity_to_request(e) for e in entities]

    async def _expirable_entities(self, request_ids: List[str]) -> List[Dict[str, Any]]:
        expirable = {s.value for s in EXPIRABLE_STATUSES}
        entities = []
        for request_id in request_ids:
            try:
                entity = await self.table.get_entity(
                    partition_key=REQUEST_PARTITION, row_key=request_id
                )
            except ResourceNotFoundError:
                raise StoreError(f"Unknown request id in batch: {request_id}")
            if entity.get("status") in expirable:
                entities.append(entity)
        return entities

    async def _expire_one_by_one(self, entities: List[Dict[str, Any]], expired_at: datetime) -> int:
        expired = 0
        for entity in entities:
            _, patch, options = _expire_operation(entity, expired_at)
            try:
                await self.table.update_entity(entity=patch, **options)
            except ResourceModifiedError:
                logger.info("Request %s changed during the expiry sweep, skipped", entity["RowKey"])
                continue
            expired += 1
        return expired

    async def expire_batch(self, request_ids: Iterable[str], expired_at: datetime) -> int:
        expired = 0
        async with _store_errors("expire batch"):
            # current etags, so that a write landing after the sweep's read wins
            entities = await self._expirable_entities(list(request_ids))
            for chunk in _chunks(entities, MAX_TRANSACTION_SIZE):
                try:
                    await self.table.submit_transaction(
                        [_expire_operation(e, expired_at) for e in chunk]
                    )
                    expired += len(chunk)
                except TableTransactionError:
                    # all or nothing: one row changed, redo the chunk row by row
                    expired += await self._expire_one_by_one(chunk, expired_at)
        return expired


def _expire_operation(entity: Dict[str, Any], expired_at: datetime):
    return (
        "update",
        {
            "PartitionKey": REQUEST_PARTITION,
            "RowKey": entity["RowKey"],
            "status": RequestStatus.EXPIRED.value,
            "expiredAt": expired_at,
            "potentialDonors": "[]",
        },
        {
            "mode": UpdateMode.MERGE,
            "etag": entity.metadata["etag"],
            "match_condition": MatchConditions.IfNotModified,
        },
    )


class TableProfileStore(ProfileStore):
    def __init__(self, table: TableClient):
        self.table = table

    async def get(self, user_id: str) -> Optional[UserProfile]:
        async with _store_errors(f"get user {user_id}"):
            try:
                entity = await self.table.get_entity(
                    partition_key=USER_PARTITION, row_key=user_id
                )
            except ResourceNotFoundError:
                return None
        return entity_to_profile(entity)

    async def get_many(self, user_ids: List[str]) -> List[UserProfile]:
        check_lookup_size(user_ids)
        if not user_ids:
            return []
        parameters: Dict[str, Any] = {"pk": USER_PARTITION}
        clauses = []
        for i, user_id in enumerate(user_ids):
            parameters[f"id{i}"] = user_id
            clauses.append(f"RowKey eq @id{i}")
        query_filter = f"PartitionKey eq @pk and ({' or '.join(clauses)})"
        async with _store_errors("lookup users"):
            entities = await _query(self.table, query_filter, parameters)
        return [entity_to_profile(e) for e in entities]

    async def upsert(self, profile: UserProfile) -> None:
        async with _store_errors(f"upsert user {profile.id}"):
            await self.table.upsert_entity(
                entity=profile_to_entity(profile), mode=UpdateMode.REPLACE
            )


class TableQueueStore(QueueStore):
    def __init__(self, table: TableClient):
        self.table = table

    async def append(self, record: QueuedNotification) -> bool:
        async with _store_errors(f"append notification {record.id}"):
            try:
                await self.table.create_entity(entity=notification_to_entity(record))
            except ResourceExistsError:
                return False
        return True

    async def get(self, notification_id: str) -> Optional[QueuedNotification]:
        async with _store_errors(f"get notification {notification_id}"):
            try:
                entity = await self.table.get_entity(
                    partition_key=QUEUE_PARTITION, row_key=notification_id
                )
            except ResourceNotFoundError:
                return None
        return entity_to_notification(entity)

    async def mark_processed(
        self,
        notification_id: str,
        processed_at: datetime,
        response=None,
        error: Optional[str] = None,
        error_code: Optional[str] = None,
    ) -> bool:
        async with _store_errors(f"mark notification {notification_id}"):
            try:
                entity = await self.table.get_entity(
                    partition_key=QUEUE_PARTITION, row_key=notification_id
                )
            except ResourceNotFoundError:
                return False
            if entity.get("processed"):
                return False

            patch: Dict[str, Any] = {
                "PartitionKey": QUEUE_PARTITION,
                "RowKey": notification_id,
                "processed": True,
                "processedAt": processed_at,
            }
            if response is not None:
                patch["response"] = json.dumps(response)
            if error is not None:
                patch["error"] = error
            if error_code is not None:
                patch["errorCode"] = error_code

            # etag guard: a concurrent worker that got there first wins
            try:
                await self.table.update_entity(
                    entity=patch,
                    mode=UpdateMode.MERGE,
                    etag=entity.metadata["etag"],
                    match_condition=MatchConditions.IfNotModified,
                )
            except ResourceModifiedError:
                logger.info("Notification %s was processed concurrently", notification_id)
                return False
        return True

    async def find_processed_before(self, cutoff: datetime) -> List[QueuedNotification]:
        async with _store_errors("query processed notifications"):
            entities = await _query(
                self.table,
                "PartitionKey eq @pk and processed eq true and createdAt lt @cutoff",
                {"pk": QUEUE_PARTITION, "cutoff": cutoff},
            )
        return [entity_to_notification(e) for e in entities]

    async def find_failed_since(self, since: datetime) -> List[QueuedNotification]:
        async with _store_errors("query failed notifications"):
            entities = await _query(
                self.table,
                "PartitionKey eq @pk and processed eq true and createdAt ge @since",
                {"pk": QUEUE_PARTITION, "since": since},
            )
        # "error ne null" is not expressible in the table query language
        return [entity_to_notification(e) for e in entities if e.get("error")]

    async def find_unprocessed_before(self, cutoff: datetime) -> List[QueuedNotification]:
        async with _store_errors("query unprocessed notifications"):
            entities = await _query(
                self.table,
                "PartitionKey eq @pk and processed eq false and createdAt lt @cutoff",
                {"pk": QUEUE_PARTITION, "cutoff": cutoff},
            )
        return [entity_to_notification(e) for e in entities]

    async def delete_batch(self, notification_ids: Iterable[str]) -> int:
        ids = list(notification_ids)
        operations = [
            ("delete", {"PartitionKey": QUEUE_PARTITION, "RowKey": notification_id})
            for notification_id in ids
        ]
        async with _store_errors("delete batch"):
            for chunk in _chunks(operations, MAX_TRANSACTION_SIZE):
                await self.table.submit_transaction(chunk)
        return len(ids)
