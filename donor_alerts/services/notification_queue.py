# donor_alerts/services/notification_queue.py
import logging

from donor_alerts.infra.stores import QueueStore
from donor_alerts.models.events import NotificationQueued
from donor_alerts.models.queued_notification import QueuedNotification
from donor_alerts.services.calls import write_call
from donor_alerts.services.event_bus import EventBus

logger = logging.getLogger(__name__)

CLICK_ACTION = "FLUTTER_NOTIFICATION_CLICK"


class NotificationQueue:
    """
    Write side of the queue. A record that is actually inserted publishes
    NotificationQueued; a duplicate id is a silent no-op, which is what makes
    redelivered events safe to replay.
    """

    def __init__(self, store: QueueStore, bus: EventBus, timeout: float = 10.0):
        self.store = store
        self.bus = bus
        self.timeout = timeout

    async def enqueue(self, record: QueuedNotification) -> bool:
        inserted = await write_call(self.store.append, record, timeout=self.timeout)
        if not inserted:
            logger.info("Notification %s already queued, skipping", record.id)
            return False
        self.bus.publish(NotificationQueued(notification_id=record.id))
        logger.debug("Queued notification %s (%s)", record.id, record.priority.value)
        return True
