# donor_alerts/infra/servicebus_consumer.py
import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from azure.servicebus import TransportType
from azure.servicebus.aio import ServiceBusClient
from pydantic import ValidationError

from donor_alerts.models.donation_request import utcnow
from donor_alerts.models.events import parse_event

logger = logging.getLogger(__name__)


def decode_body(body) -> Dict[str, Any]:
    # msg.body is an iterable of byte sections
    body_bytes = b"".join(part for part in body)
    return json.loads(body_bytes.decode("utf-8"))


class ServiceBusConsumer:
    """
    Feeds domain events produced by the external request store into the
    event bus:
      - AMQP over WebSocket (443) so it works behind App Service.
      - Each message is parsed into an event and dispatched right away.
      - complete when every handler succeeded or failed for good,
        abandon (Service Bus redelivers, then dead-letters after
        MaxDeliveryCount) when a handler reported a retryable failure,
        dead-letter straight away when the body is not a valid event.
      - Reconnects with a fixed backoff if the connection drops.
    """

    def __init__(self, bus, connection_string: Optional[str], queue_name: str, backoff: float = 5.0):
        self.bus = bus
        self.connection_string = connection_string
        self.queue_name = queue_name
        self.backoff = backoff
        self.started_at: Optional[datetime] = None
        self.last_message_at: Optional[datetime] = None
        self.last_error: Optional[str] = None
        self.running = False

    def status(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "lastMessageAt": self.last_message_at.isoformat() if self.last_message_at else None,
            "lastError": self.last_error,
            "queue": self.queue_name,
            "hasConnectionString": bool(self.connection_string),
        }

    async def handle_message(self, receiver, msg) -> str:
        """Returns what was done with the message: completed / abandoned / dead-lettered."""
        try:
            payload = decode_body(msg.body)
            event = parse_event(payload)
        except (ValueError, KeyError, ValidationError) as e:
            logger.error("Invalid event message %s: %s", msg.message_id, e)
            await receiver.dead_letter_message(
                msg, reason="invalid_event", error_description=str(e)[:1000]
            )
            return "dead-lettered"

        logger.info("Received %s %s", type(event).__name__, event.event_id)
        results = await self.bus.dispatch(event, redeliver=False)
        self.last_message_at = utcnow()

        if any(not r.success and r.retryable for r in results):
            await receiver.abandon_message(msg)
            return "abandoned"
        await receiver.complete_message(msg)
        return "completed"

    async def run(self) -> None:
        if not self.connection_string:
            logger.warning("AZURE_SERVICE_BUS_CONNECTION_STRING not set, not consuming events")
            return

        self.started_at = utcnow()
        self.running = True
        try:
            while True:
                try:
                    logger.info("Connecting to Service Bus (queue: %s) over WebSockets 443", self.queue_name)
                    async with ServiceBusClient.from_connection_string(
                        self.connection_string,
                        transport_type=TransportType.AmqpOverWebsocket,
                    ) as sb_client:
                        receiver = sb_client.get_queue_receiver(
                            queue_name=self.queue_name,
                            max_wait_time=20,
                        )
                        async with receiver:
                            logger.info("Listening on queue %s", self.queue_name)
                            while True:
                                messages = await receiver.receive_messages(
                                    max_message_count=10,
                                    max_wait_time=10,
                                )
                                if not messages:
                                    await asyncio.sleep(0.5)
                                    continue
                                for msg in messages:
                                    try:
                                        await self.handle_message(receiver, msg)
                                    except Exception as e:
                                        # left unsettled: the lock expires and the message comes back
                                        self.last_error = str(e)
                                        logger.exception("Error handling message %s", msg.message_id)

                    await asyncio.sleep(1)

                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    self.last_error = str(e)
                    logger.error("Service Bus connection error, retrying in %ss: %s", self.backoff, e)
                    await asyncio.sleep(self.backoff)
        finally:
            self.running = False
