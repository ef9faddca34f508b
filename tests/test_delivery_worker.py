"""
Tests for the delivery worker: every run ends with the record processed
and exactly one of response/error set.
"""
import asyncio
from datetime import timedelta

from conftest import NOW, RecordingGateway

from donor_alerts.errors import GatewayError
from donor_alerts.models.events import NotificationQueued
from donor_alerts.models.queued_notification import Priority, QueuedNotification
from donor_alerts.services.delivery_worker import DeliveryWorker


def _record(**overrides):
    data = {
        "id": "req-1:d1",
        "token": "T1",
        "title": "🚨 EMERGENCY: O- Blood Needed!",
        "body": "O- blood needed - 2 unit(s) required. Tap to respond.",
        "data": {"type": "blood_request", "requestId": "req-1"},
        "priority": Priority.HIGH,
        "createdAt": NOW,
    }
    data.update(overrides)
    return QueuedNotification(**data)


def _worker(runtime, gateway):
    return DeliveryWorker(runtime.queue_store, gateway, store_timeout=2.0, gateway_timeout=2.0)


def _process(runtime, gateway, record):
    async def scenario():
        await runtime.queue_store.append(record)
        result = await _worker(runtime, gateway).handle(NotificationQueued(notification_id=record.id))
        return result, await runtime.queue_store.get(record.id)

    return asyncio.run(scenario())


class TestDeliveryWorker:
    def test_successful_send_stores_response(self, runtime, gateway):
        result, stored = _process(runtime, gateway, _record())

        assert result.success and result.data == "sent"
        assert stored.processed is True
        assert stored.processedAt is not None
        assert stored.response == "projects/demo/messages/1"
        assert stored.error is None

    def test_sends_platform_hints(self, runtime, gateway):
        _process(runtime, gateway, _record())

        [message] = gateway.sent
        assert message["token"] == "T1"
        assert message["notification"]["title"].startswith("🚨 EMERGENCY")
        assert message["data"] == {"type": "blood_request", "requestId": "req-1"}
        assert message["android"]["priority"] == "high"
        assert message["android"]["notification"]["channel_id"] == "high_importance_channel"
        assert message["android"]["notification"]["sound"] == "default"
        assert message["apns"]["payload"]["aps"]["badge"] == 1

    def test_gateway_failure_is_recorded_not_retried(self, runtime, failing_gateway):
        result, stored = _process(runtime, failing_gateway, _record())

        assert result.success and result.data == "failed"
        assert stored.processed is True
        assert stored.error == "Requested entity was not found."
        assert stored.errorCode == "unregistered"
        assert stored.response is None
        assert len(failing_gateway.sent) == 1

    def test_unexpected_gateway_exception_is_recorded(self, runtime):
        gateway = RecordingGateway(error=RuntimeError("socket closed"))

        result, stored = _process(runtime, gateway, _record())

        assert result.success
        assert stored.processed is True
        assert stored.error == "socket closed"
        assert stored.errorCode == "unexpected"

    def test_gateway_timeout_is_recorded(self, runtime):
        gateway = RecordingGateway(error=GatewayError("read timed out", code="timeout"))

        _, stored = _process(runtime, gateway, _record())

        assert stored.errorCode == "timeout"

    def test_record_without_token_fails_without_calling_gateway(self, runtime, gateway):
        result, stored = _process(runtime, gateway, _record(token=None))

        assert result.success
        assert stored.processed is True
        assert stored.error == "No token provided"
        assert stored.errorCode == "invalid_record"
        assert gateway.sent == []

    def test_redelivery_of_processed_record_is_a_no_op(self, runtime, gateway):
        async def scenario():
            await runtime.queue_store.append(_record())
            worker = _worker(runtime, gateway)
            event = NotificationQueued(notification_id="req-1:d1")
            await worker.handle(event)
            first = await runtime.queue_store.get("req-1:d1")
            second_result = await worker.handle(event)
            return first, second_result, await runtime.queue_store.get("req-1:d1")

        first, second_result, after = asyncio.run(scenario())

        assert second_result.data == "already_processed"
        assert len(gateway.sent) == 1
        assert after == first

    def test_missing_record_is_a_no_op(self, runtime, gateway):
        result = asyncio.run(
            _worker(runtime, gateway).handle(NotificationQueued(notification_id="nope"))
        )

        assert result.success and result.data == "missing"
        assert gateway.sent == []


def test_mark_processed_happens_once(runtime):
    async def scenario():
        await runtime.queue_store.append(_record())
        first = await runtime.queue_store.mark_processed("req-1:d1", NOW, response="a")
        second = await runtime.queue_store.mark_processed(
            "req-1:d1", NOW + timedelta(seconds=1), error="late"
        )
        return first, second, await runtime.queue_store.get("req-1:d1")

    first, second, stored = asyncio.run(scenario())

    assert first is True
    assert second is False
    assert stored.response == "a"
    assert stored.error is None
