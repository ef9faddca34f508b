# donor_alerts/services/delivery_worker.py
import logging
from typing import Any, Optional

from donor_alerts.errors import GatewayError, StoreError
from donor_alerts.infra.push_gateway import PushGateway, build_push_message
from donor_alerts.infra.stores import QueueStore
from donor_alerts.models.donation_request import utcnow
from donor_alerts.models.events import NotificationQueued
from donor_alerts.models.result import HandlerResult
from donor_alerts.services.calls import gateway_call, read_call, write_call

logger = logging.getLogger(__name__)


class DeliveryWorker:
    """
    Sends one queued notification through the push gateway and records the
    outcome on the record.

    The record is marked processed whatever happens at the gateway, with
    either the gateway response or the error, so a bad record is never
    retried in a loop. Requeueing transient failures is the requeue
    sweeper's job.
    """

    def __init__(
        self,
        store: QueueStore,
        gateway: PushGateway,
        store_timeout: float = 10.0,
        gateway_timeout: float = 10.0,
    ):
        self.store = store
        self.gateway = gateway
        self.store_timeout = store_timeout
        self.gateway_timeout = gateway_timeout

    async def _finish(
        self,
        notification_id: str,
        response: Any = None,
        error: Optional[str] = None,
        error_code: Optional[str] = None,
    ) -> bool:
        return await write_call(
            self.store.mark_processed,
            notification_id,
            utcnow(),
            response,
            error,
            error_code,
            timeout=self.store_timeout,
        )

    async def handle(self, event: NotificationQueued) -> HandlerResult[str]:
        notification_id = event.notification_id
        try:
            record = await read_call(self.store.get, notification_id, timeout=self.store_timeout)
            if record is None:
                logger.warning("Notification %s not found", notification_id)
                return HandlerResult.ok("missing")
            if record.processed:
                # redelivered trigger
                logger.info("Notification %s already processed, skipping", notification_id)
                return HandlerResult.ok("already_processed")

            logger.info("Processing notification %s", notification_id)

            if not record.token or not record.title:
                missing = "token" if not record.token else "title"
                logger.error("Notification %s has no %s", notification_id, missing)
                await self._finish(notification_id, error=f"No {missing} provided", error_code="invalid_record")
                return HandlerResult.ok("failed")

            try:
                response = await gateway_call(
                    self.gateway.send, build_push_message(record), timeout=self.gateway_timeout
                )
            except GatewayError as e:
                logger.error("Push for notification %s failed [%s]: %s", notification_id, e.code, e)
                await self._finish(notification_id, error=str(e) or e.code, error_code=e.code)
                return HandlerResult.ok("failed")
            except Exception as e:
                logger.exception("Unexpected error sending notification %s", notification_id)
                await self._finish(
                    notification_id, error=str(e) or e.__class__.__name__, error_code="unexpected"
                )
                return HandlerResult.ok("failed")

            await self._finish(notification_id, response=response)
            logger.info("Notification %s sent: %s", notification_id, response)
            return HandlerResult.ok("sent")

        except StoreError as e:
            logger.exception("Store error while processing notification %s", notification_id)
            return HandlerResult.from_exception(e, error_code="STORE_ERROR", retryable=True)
