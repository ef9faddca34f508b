# donor_alerts/services/requests.py
import logging
from typing import Any, Dict, Optional

from donor_alerts.errors import ConflictError, StoreError
from donor_alerts.infra.stores import RequestStore
from donor_alerts.models.donation_request import DonationRequest, RequestStatus
from donor_alerts.models.events import RequestCreated, RequestStatusChanged
from donor_alerts.models.result import HandlerResult
from donor_alerts.services.calls import read_call, write_call
from donor_alerts.services.event_bus import EventBus

logger = logging.getLogger(__name__)


class RequestService:
    """
    Writes donation requests and publishes the matching domain event, so
    the notification side never has to watch the store itself.
    """

    def __init__(
        self, store: RequestStore, bus: EventBus, timeout: float = 10.0, max_attempts: int = 3
    ):
        self.store = store
        self.bus = bus
        self.timeout = timeout
        self.max_attempts = max_attempts

    async def create(self, request: DonationRequest) -> HandlerResult[DonationRequest]:
        try:
            existing = await read_call(self.store.get, request.id, timeout=self.timeout)
            if existing is not None:
                return HandlerResult.failure(f"Request {request.id} already exists", "conflict")
            await write_call(self.store.create, request, timeout=self.timeout)
        except StoreError as e:
            logger.exception("Could not create request %s", request.id)
            return HandlerResult.from_exception(e, error_code="STORE_ERROR", retryable=True)

        self.bus.publish(RequestCreated(request=request))
        logger.info("Request %s created (%s, %s)", request.id, request.bloodType, request.urgency.value)
        return HandlerResult.ok(request)

    async def transition(
        self,
        request_id: str,
        target: RequestStatus,
        changes: Optional[Dict[str, Any]] = None,
    ) -> HandlerResult[DonationRequest]:
        attempt = 0
        while True:
            attempt += 1
            try:
                before = await read_call(self.store.get, request_id, timeout=self.timeout)
                if before is None:
                    return HandlerResult.failure(f"Request {request_id} not found", "not_found")
                if not before.can_transition(target):
                    return HandlerResult.failure(
                        f"Cannot move request {request_id} from {before.status.value} to {target.value}",
                        "invalid_transition",
                    )
                update: Dict[str, Any] = dict(changes or {})
                update["status"] = target
                after = before.model_copy(update=update)
                await write_call(self.store.save, after, before.status, timeout=self.timeout)
                break
            except ConflictError as e:
                # someone else moved the request (e.g. the expiry sweep); re-read and re-check
                if attempt >= self.max_attempts:
                    logger.warning("Request %s kept changing under update: %s", request_id, e)
                    return HandlerResult.failure(str(e), "conflict")
                logger.info("Request %s changed concurrently, retrying", request_id)
            except StoreError as e:
                logger.exception("Could not update request %s", request_id)
                return HandlerResult.from_exception(e, error_code="STORE_ERROR", retryable=True)

        self.bus.publish(RequestStatusChanged(request_id=request_id, before=before, after=after))
        logger.info("Request %s: %s -> %s", request_id, before.status.value, target.value)
        return HandlerResult.ok(after)

    async def activate(self, request_id: str) -> HandlerResult[DonationRequest]:
        return await self.transition(request_id, RequestStatus.ACTIVE)

    async def accept(self, request_id: str, donor_id: str, donor_name: Optional[str] = None) -> HandlerResult[DonationRequest]:
        return await self.transition(
            request_id,
            RequestStatus.ACCEPTED,
            {"acceptedBy": donor_id, "acceptedByName": donor_name},
        )
