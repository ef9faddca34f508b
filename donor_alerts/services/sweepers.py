# donor_alerts/services/sweepers.py
"""
Timer-driven jobs. Each run() takes an optional `now` so a run can be
pinned to a point in time, and reports what it did as a HandlerResult.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from donor_alerts.errors import StoreError
from donor_alerts.infra.push_gateway import TRANSIENT_ERROR_CODES
from donor_alerts.infra.stores import QueueStore, RequestStore
from donor_alerts.models.donation_request import as_utc, utcnow
from donor_alerts.models.queued_notification import QueuedNotification
from donor_alerts.models.result import HandlerResult
from donor_alerts.services.calls import read_call, write_call
from donor_alerts.services.notification_queue import NotificationQueue

logger = logging.getLogger(__name__)


class ExpirySweeper:
    """
    pending/active requests past expiresAt -> expired, in one batch. A request
    whose status moved on between the read and the write is skipped.
    """

    name = "expiry"

    def __init__(self, requests: RequestStore, timeout: float = 10.0):
        self.requests = requests
        self.timeout = timeout

    async def run(self, now: Optional[datetime] = None) -> HandlerResult[int]:
        now = as_utc(now or utcnow())
        try:
            due = await read_call(self.requests.find_expirable, now, timeout=self.timeout)
            if not due:
                logger.debug("No requests to expire")
                return HandlerResult.ok(0)

            logger.info("Expiring %d requests", len(due))
            expired = await write_call(
                self.requests.expire_batch, [r.id for r in due], now, timeout=self.timeout
            )
        except StoreError as e:
            logger.exception("Expiry sweep failed")
            return HandlerResult.from_exception(e, error_code="STORE_ERROR", retryable=True)
        except Exception as e:
            logger.exception("Expiry sweep crashed")
            return HandlerResult.from_exception(e, error_code="SWEEP_CRASHED")

        if expired < len(due):
            logger.info("%d requests changed status during the sweep, left alone", len(due) - expired)
        logger.info("Expired %d requests", expired)
        return HandlerResult.ok(expired)


class RetentionSweeper:
    """
    Deletes processed queue records older than the retention window.
    Unprocessed records are left alone at any age so stuck ones stay visible.
    """

    name = "retention"

    def __init__(self, queue: QueueStore, retention: timedelta = timedelta(hours=24), timeout: float = 10.0):
        self.queue = queue
        self.retention = retention
        self.timeout = timeout

    async def run(self, now: Optional[datetime] = None) -> HandlerResult[int]:
        cutoff = as_utc(now or utcnow()) - self.retention
        try:
            old = await read_call(self.queue.find_processed_before, cutoff, timeout=self.timeout)
            old = [r for r in old if r.processed]
            if not old:
                logger.debug("No old notifications to clean")
                return HandlerResult.ok(0)
            deleted = await write_call(
                self.queue.delete_batch, [r.id for r in old], timeout=self.timeout
            )
        except StoreError as e:
            logger.exception("Retention sweep failed")
            return HandlerResult.from_exception(e, error_code="STORE_ERROR", retryable=True)
        except Exception as e:
            logger.exception("Retention sweep crashed")
            return HandlerResult.from_exception(e, error_code="SWEEP_CRASHED")

        logger.info("Cleaned %d old notifications", deleted)
        return HandlerResult.ok(deleted)


def retry_of(record: QueuedNotification, now: datetime) -> QueuedNotification:
    attempt = record.attempt + 1
    return QueuedNotification(
        id=f"{record.root_id}~{attempt}",
        token=record.token,
        title=record.title,
        body=record.body,
        data=dict(record.data),
        priority=record.priority,
        createdAt=now,
        attempt=attempt,
        retryOf=record.id,
    )


class RequeueSweeper:
    """
    Bounded retry for failed deliveries. A failed record is never touched;
    a fresh record with the next attempt number is queued next to it. The
    retry id is derived from the failed record, so running this twice over
    the same failure queues one retry.
    Permanent failures and records at max_attempts are left as they are.
    """

    name = "requeue"

    def __init__(
        self,
        queue_store: QueueStore,
        queue: NotificationQueue,
        max_attempts: int = 3,
        lookback: timedelta = timedelta(hours=24),
        timeout: float = 10.0,
    ):
        self.queue_store = queue_store
        self.queue = queue
        self.max_attempts = max_attempts
        self.lookback = lookback
        self.timeout = timeout

    def should_retry(self, record: QueuedNotification) -> bool:
        return (
            record.processed
            and record.error is not None
            and record.errorCode in TRANSIENT_ERROR_CODES
            and record.attempt < self.max_attempts
        )

    async def run(self, now: Optional[datetime] = None) -> HandlerResult[int]:
        now = as_utc(now or utcnow())
        requeued = 0
        try:
            failed = await read_call(
                self.queue_store.find_failed_since, now - self.lookback, timeout=self.timeout
            )
            for record in failed:
                if not self.should_retry(record):
                    continue
                if await self.queue.enqueue(retry_of(record, now)):
                    requeued += 1
        except StoreError as e:
            logger.exception("Requeue sweep failed after %d retries", requeued)
            return HandlerResult.from_exception(e, error_code="STORE_ERROR", retryable=True)
        except Exception as e:
            logger.exception("Requeue sweep crashed after %d retries", requeued)
            return HandlerResult.from_exception(e, error_code="SWEEP_CRASHED")

        if requeued:
            logger.info("Requeued %d failed notifications", requeued)
        return HandlerResult.ok(requeued)
