# donor_alerts/services/manual_trigger.py
import logging
import uuid

from donor_alerts.errors import StoreError
from donor_alerts.infra.stores import ProfileStore
from donor_alerts.models.donation_request import utcnow
from donor_alerts.models.queued_notification import Priority, QueuedNotification
from donor_alerts.models.result import HandlerResult
from donor_alerts.services.calls import read_call
from donor_alerts.services.notification_queue import NotificationQueue

logger = logging.getLogger(__name__)


class ManualTrigger:
    """Queues a test push to the caller's own device."""

    def __init__(self, profiles: ProfileStore, queue: NotificationQueue, timeout: float = 10.0):
        self.profiles = profiles
        self.queue = queue
        self.timeout = timeout

    async def send(self, user_id: str) -> HandlerResult[str]:
        logger.info("Testing notification for user %s", user_id)
        try:
            profile = await read_call(self.profiles.get, user_id, timeout=self.timeout)
            if profile is None or not profile.has_token:
                return HandlerResult.failure("No push token found for user", "not-found")

            now = utcnow()
            record = QueuedNotification(
                id=f"test-{uuid.uuid4()}",
                token=profile.fcmToken,
                title="🧪 Test Notification",
                body="Your push notifications are working!",
                data={"type": "test", "userId": user_id, "timestamp": now.isoformat()},
                createdAt=now,
                priority=Priority.NORMAL,
            )
            await self.queue.enqueue(record)
        except StoreError as e:
            logger.exception("Test notification for user %s failed", user_id)
            return HandlerResult.from_exception(e, error_code="internal")

        logger.info("Test notification queued for user %s", user_id)
        return HandlerResult.ok(record.id)
