# donor_alerts/services/status_notifier.py
import logging

from donor_alerts.errors import StoreError
from donor_alerts.infra.stores import ProfileStore
from donor_alerts.models.donation_request import DonationRequest, RequestStatus
from donor_alerts.models.events import RequestStatusChanged
from donor_alerts.models.queued_notification import Priority, QueuedNotification
from donor_alerts.models.result import HandlerResult
from donor_alerts.services.calls import read_call
from donor_alerts.services.notification_queue import CLICK_ACTION, NotificationQueue

logger = logging.getLogger(__name__)


def became_accepted(before: DonationRequest, after: DonationRequest) -> bool:
    return before.status != RequestStatus.ACCEPTED and after.status == RequestStatus.ACCEPTED


def acceptance_notification(request: DonationRequest, token: str) -> QueuedNotification:
    accepted_by = request.acceptedByName or "a donor"
    return QueuedNotification(
        id=f"{request.id}:accepted",
        token=token,
        title="✅ Request Accepted!",
        body=f"Your {request.bloodType} blood request has been accepted by {accepted_by}",
        data={
            "type": "request_accepted",
            "requestId": request.id,
            "acceptedBy": request.acceptedBy or "",
            "click_action": CLICK_ACTION,
        },
        priority=Priority.HIGH,
    )


class StatusChangeNotifier:
    """Tells the requester when their request moves into `accepted`."""

    def __init__(self, profiles: ProfileStore, queue: NotificationQueue, timeout: float = 10.0):
        self.profiles = profiles
        self.queue = queue
        self.timeout = timeout

    async def handle(self, event: RequestStatusChanged) -> HandlerResult[bool]:
        if not became_accepted(event.before, event.after):
            return HandlerResult.ok(False)

        request = event.after
        logger.info("Request %s was accepted by %s", event.request_id, request.acceptedBy)
        try:
            requester = await read_call(self.profiles.get, request.requesterId, timeout=self.timeout)
            if requester is None or not requester.has_token:
                logger.info("Requester %s has no push token", request.requesterId)
                return HandlerResult.ok(False)
            queued = await self.queue.enqueue(acceptance_notification(request, requester.fcmToken))
        except StoreError as e:
            logger.exception("Could not notify requester of request %s", event.request_id)
            return HandlerResult.from_exception(e, error_code="STORE_ERROR", retryable=True)

        if queued:
            logger.info("Acceptance notification queued for request %s", event.request_id)
        return HandlerResult.ok(queued)
