# donor_alerts/services/fanout.py
import asyncio
import logging
from typing import List

from donor_alerts.errors import StoreError
from donor_alerts.infra.stores import ProfileStore
from donor_alerts.models.donation_request import DonationRequest, Urgency
from donor_alerts.models.events import RequestCreated
from donor_alerts.models.queued_notification import Priority, QueuedNotification
from donor_alerts.models.result import HandlerResult
from donor_alerts.models.user_profile import UserProfile
from donor_alerts.services.batching import chunked
from donor_alerts.services.calls import read_call
from donor_alerts.services.notification_queue import CLICK_ACTION, NotificationQueue

logger = logging.getLogger(__name__)


def donor_title(request: DonationRequest) -> str:
    if request.urgency == Urgency.EMERGENCY:
        return f"🚨 EMERGENCY: {request.bloodType} Blood Needed!"
    return f"🩸 Blood Request: {request.bloodType} Needed"


def donor_body(request: DonationRequest) -> str:
    return f"{request.bloodType} blood needed - {request.units} unit(s) required. Tap to respond."


def donor_notification(request: DonationRequest, donor: UserProfile) -> QueuedNotification:
    return QueuedNotification(
        id=f"{request.id}:{donor.id}",
        token=donor.fcmToken,
        title=donor_title(request),
        body=donor_body(request),
        data={
            "type": "blood_request",
            "requestId": request.id,
            "bloodType": request.bloodType,
            "urgency": request.urgency.value,
            "units": str(request.units),
            "click_action": CLICK_ACTION,
        },
        priority=Priority.HIGH if request.urgency == Urgency.EMERGENCY else Priority.NORMAL,
    )


class FanOutDispatcher:
    """
    RequestCreated -> one queued notification per potential donor with a
    push token. Donor lookups go in groups of `batch_size` (one query per
    group, groups one after another); the enqueues of a group run
    concurrently.
    """

    def __init__(
        self,
        profiles: ProfileStore,
        queue: NotificationQueue,
        batch_size: int = 10,
        timeout: float = 10.0,
    ):
        self.profiles = profiles
        self.queue = queue
        self.batch_size = batch_size
        self.timeout = timeout

    async def _enqueue_group(self, request: DonationRequest, donors: List[UserProfile]) -> int:
        with_token = []
        for donor in donors:
            if not donor.has_token:
                logger.info("Donor %s has no push token, skipping", donor.id)
                continue
            with_token.append(donor)

        inserted = await asyncio.gather(
            *(self.queue.enqueue(donor_notification(request, d)) for d in with_token)
        )
        return sum(1 for ok in inserted if ok)

    async def handle(self, event: RequestCreated) -> HandlerResult[int]:
        request = event.request
        donor_ids = request.donor_ids()
        logger.info(
            "New blood request %s: %s, %s, %d potential donors",
            request.id, request.bloodType, request.urgency.value, len(donor_ids),
        )

        if not donor_ids:
            logger.info("No potential donors for request %s", request.id)
            return HandlerResult.ok(0)

        queued = 0
        try:
            for group in chunked(donor_ids, self.batch_size):
                donors = await read_call(self.profiles.get_many, group, timeout=self.timeout)
                found = {d.id for d in donors}
                for missing in (i for i in group if i not in found):
                    logger.info("Donor %s has no profile, skipping", missing)
                queued += await self._enqueue_group(request, donors)
        except StoreError as e:
            logger.exception("Fan-out for request %s stopped after %d notifications", request.id, queued)
            return HandlerResult.from_exception(e, error_code="STORE_ERROR", retryable=True)

        logger.info("Queued %d notifications for request %s", queued, request.id)
        return HandlerResult.ok(queued)
