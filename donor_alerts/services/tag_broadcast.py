# donor_alerts/services/tag_broadcast.py
import logging

from donor_alerts.errors import GatewayError
from donor_alerts.infra.push_gateway import TagGateway
from donor_alerts.models.events import RequestCreated
from donor_alerts.models.result import HandlerResult
from donor_alerts.services.calls import gateway_call

logger = logging.getLogger(__name__)


class TagBroadcastNotifier:
    """
    RequestCreated -> one gateway-side broadcast to every device tagged with
    the request's city AND blood type. Nothing goes through the queue.
    """

    def __init__(self, gateway: TagGateway, timeout: float = 10.0):
        self.gateway = gateway
        self.timeout = timeout

    async def handle(self, event: RequestCreated) -> HandlerResult:
        request = event.request
        blood_type = request.bloodType or "Unknown"
        city = request.city or "Unknown"
        try:
            response = await gateway_call(
                self.gateway.send_to_tags,
                "Blood Request Alert",
                f"Urgent {blood_type} needed in {city}",
                {"city": city, "bloodType": blood_type},
                {"requestId": request.id, "bloodType": blood_type, "city": city},
                timeout=self.timeout,
            )
        except GatewayError as e:
            # not retried: a second broadcast would reach the same audience twice
            logger.error("Tag broadcast for request %s failed [%s]: %s", request.id, e.code, e)
            return HandlerResult.from_exception(e, error_code=e.code)

        logger.info("Tag broadcast for request %s: %s", request.id, response)
        return HandlerResult.ok(response)
