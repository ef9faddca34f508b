"""Tests for the acceptance notification sent to the requester."""
import asyncio

import pytest
from conftest import make_profile, make_request

from donor_alerts.models.events import RequestStatusChanged
from donor_alerts.models.queued_notification import Priority
from donor_alerts.services.status_notifier import became_accepted


def _changed(before_status, after_status, **after_fields):
    before = make_request(status=before_status)
    after = make_request(status=after_status, **after_fields)
    return RequestStatusChanged(request_id=after.id, before=before, after=after)


@pytest.fixture
def requester_with_token(runtime):
    asyncio.run(runtime.profiles.upsert(make_profile("requester", "T2")))


class TestStatusChangeNotifier:
    def test_pending_straight_to_accepted_notifies_requester(self, runtime, requester_with_token):
        event = _changed("pending", "accepted", acceptedBy="d1", acceptedByName="Amina")

        result = asyncio.run(runtime.status_notifier.handle(event))

        assert result.success and result.data is True
        [record] = runtime.queue_store.records.values()
        assert record.token == "T2"
        assert record.priority == Priority.HIGH
        assert record.title == "✅ Request Accepted!"
        assert record.body == "Your A+ blood request has been accepted by Amina"
        assert record.data["type"] == "request_accepted"
        assert record.data["requestId"] == "req-1"
        assert record.data["acceptedBy"] == "d1"

    def test_falls_back_to_generic_donor_name(self, runtime, requester_with_token):
        asyncio.run(runtime.status_notifier.handle(_changed("active", "accepted", acceptedBy="d1")))

        [record] = runtime.queue_store.records.values()
        assert record.body.endswith("accepted by a donor")

    def test_same_transition_twice_queues_one_notification(self, runtime, requester_with_token):
        event = _changed("active", "accepted", acceptedBy="d1")

        async def scenario():
            await runtime.status_notifier.handle(event)
            await runtime.status_notifier.handle(event)

        asyncio.run(scenario())

        assert len(runtime.queue_store.records) == 1

    @pytest.mark.parametrize(
        "before,after",
        [
            ("accepted", "accepted"),
            ("pending", "active"),
            ("active", "expired"),
            ("pending", "expired"),
        ],
    )
    def test_other_updates_are_ignored(self, runtime, requester_with_token, before, after):
        result = asyncio.run(runtime.status_notifier.handle(_changed(before, after)))

        assert result.success and result.data is False
        assert runtime.queue_store.records == {}

    def test_requester_without_token_is_skipped(self, runtime):
        asyncio.run(runtime.profiles.upsert(make_profile("requester")))

        result = asyncio.run(runtime.status_notifier.handle(_changed("active", "accepted")))

        assert result.success
        assert runtime.queue_store.records == {}

    def test_unknown_requester_is_skipped(self, runtime):
        result = asyncio.run(runtime.status_notifier.handle(_changed("active", "accepted")))

        assert result.success
        assert runtime.queue_store.records == {}


def test_became_accepted():
    assert became_accepted(make_request(status="active"), make_request(status="accepted"))
    assert not became_accepted(make_request(status="accepted"), make_request(status="accepted"))
