"""Tests for the expiry, retention and requeue sweepers."""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from conftest import NOW, make_request

from donor_alerts.errors import StoreError
from donor_alerts.infra.memory_store import InMemoryRequestStore
from donor_alerts.models.donation_request import RequestStatus
from donor_alerts.models.queued_notification import QueuedNotification
from donor_alerts.services.sweepers import ExpirySweeper, RetentionSweeper


def _notification(notification_id, age, processed=True, **fields):
    return QueuedNotification(
        id=notification_id,
        token="T",
        title="t",
        createdAt=NOW - age,
        processed=processed,
        processedAt=NOW - age if processed else None,
        **fields,
    )


class TestExpirySweeper:
    def test_expires_overdue_active_request(self, runtime):
        async def scenario():
            await runtime.requests.create(
                make_request(status="active", potentialDonors=["d1", "d2"], expiresAt=NOW - timedelta(seconds=1))
            )
            result = await runtime.expiry_sweeper.run(now=NOW)
            return result, await runtime.requests.get("req-1")

        result, request = asyncio.run(scenario())

        assert result.data == 1
        assert request.status == RequestStatus.EXPIRED
        assert request.potentialDonors == []
        assert request.expiredAt == NOW

    def test_expires_at_exactly_now(self, runtime):
        async def scenario():
            await runtime.requests.create(make_request(status="pending", expiresAt=NOW))
            await runtime.expiry_sweeper.run(now=NOW)
            return await runtime.requests.get("req-1")

        assert asyncio.run(scenario()).status == RequestStatus.EXPIRED

    @pytest.mark.parametrize("status", ["accepted", "expired"])
    def test_never_touches_final_states(self, runtime, status):
        original = make_request(status=status, potentialDonors=["d1"], expiresAt=NOW - timedelta(days=3))

        async def scenario():
            await runtime.requests.create(original)
            result = await runtime.expiry_sweeper.run(now=NOW)
            return result, await runtime.requests.get("req-1")

        result, request = asyncio.run(scenario())

        assert result.data == 0
        assert request == original

    def test_leaves_future_requests_alone(self, runtime):
        async def scenario():
            await runtime.requests.create(make_request(status="active", expiresAt=NOW + timedelta(minutes=1)))
            result = await runtime.expiry_sweeper.run(now=NOW)
            return result, await runtime.requests.get("req-1")

        result, request = asyncio.run(scenario())

        assert result.success and result.data == 0
        assert request.status == RequestStatus.ACTIVE

    def test_store_failure_is_reported(self):
        class BrokenStore(InMemoryRequestStore):
            async def find_expirable(self, now):
                raise StoreError("boom")

        result = asyncio.run(ExpirySweeper(BrokenStore(), timeout=1.0).run(now=NOW))

        assert not result.success
        assert result.retryable

    def test_unexpected_error_is_reported_not_raised(self):
        class CrashingStore(InMemoryRequestStore):
            async def find_expirable(self, now):
                raise TypeError("can't compare offset-naive and offset-aware datetimes")

        result = asyncio.run(ExpirySweeper(CrashingStore(), timeout=1.0).run(now=NOW))

        assert not result.success
        assert result.error_code == "SWEEP_CRASHED"

    def test_naive_expiry_times_are_read_as_utc(self, runtime):
        async def scenario():
            await runtime.requests.create(
                make_request(id="naive", status="active", expiresAt=datetime(2024, 3, 1, 11, 0))
            )
            await runtime.requests.create(
                make_request(id="aware", status="active", expiresAt=NOW - timedelta(minutes=1))
            )
            return await runtime.expiry_sweeper.run(now=NOW)

        result = asyncio.run(scenario())

        assert result.data == 2
        assert runtime.requests.records["naive"].expiresAt == datetime(2024, 3, 1, 11, 0, tzinfo=timezone.utc)
        assert runtime.requests.records["aware"].status == RequestStatus.EXPIRED

    def test_acceptance_during_sweep_wins(self):
        class AcceptedMidSweep(InMemoryRequestStore):
            async def find_expirable(self, now):
                due = await super().find_expirable(now)
                self.records["req-1"] = self.records["req-1"].model_copy(
                    update={"status": RequestStatus.ACCEPTED, "acceptedBy": "d1"}
                )
                return due

        store = AcceptedMidSweep()

        async def scenario():
            await store.create(make_request(status="active", potentialDonors=["d1"], expiresAt=NOW - timedelta(seconds=1)))
            return await ExpirySweeper(store, timeout=1.0).run(now=NOW)

        result = asyncio.run(scenario())

        assert result.success and result.data == 0
        stored = store.records["req-1"]
        assert stored.status == RequestStatus.ACCEPTED
        assert stored.acceptedBy == "d1"
        assert stored.potentialDonors == ["d1"]
        assert stored.expiredAt is None


class TestRetentionSweeper:
    def test_deletes_only_old_processed_records(self, runtime):
        async def scenario():
            for record in (
                _notification("old-done", timedelta(hours=25)),
                _notification("old-stuck", timedelta(days=7), processed=False),
                _notification("new-done", timedelta(hours=2)),
                _notification("old-failed", timedelta(hours=30), error="boom"),
            ):
                await runtime.queue_store.append(record)
            return await runtime.retention_sweeper.run(now=NOW)

        result = asyncio.run(scenario())

        assert result.data == 2
        assert sorted(runtime.queue_store.records) == ["new-done", "old-stuck"]

    def test_nothing_to_clean(self, runtime):
        result = asyncio.run(RetentionSweeper(runtime.queue_store).run(now=NOW))
        assert result.success and result.data == 0


class TestRequeueSweeper:
    def _seed(self, runtime, *records):
        async def seed():
            for record in records:
                await runtime.queue_store.append(record)

        asyncio.run(seed())

    def test_requeues_transient_failure_once(self, runtime):
        self._seed(runtime, _notification("req-1:d1", timedelta(minutes=30), error="timed out", errorCode="timeout"))

        async def scenario():
            first = await runtime.requeue_sweeper.run(now=NOW)
            second = await runtime.requeue_sweeper.run(now=NOW)
            return first, second

        first, second = asyncio.run(scenario())

        assert first.data == 1
        assert second.data == 0
        retry = runtime.queue_store.records["req-1:d1~2"]
        assert retry.processed is False
        assert retry.attempt == 2
        assert retry.retryOf == "req-1:d1"
        # failed record untouched
        assert runtime.queue_store.records["req-1:d1"].error == "timed out"

    def test_skips_permanent_and_exhausted_failures(self, runtime):
        self._seed(
            runtime,
            _notification("a", timedelta(minutes=5), error="gone", errorCode="unregistered"),
            _notification("b~3", timedelta(minutes=5), error="timed out", errorCode="timeout", attempt=3),
            _notification("c", timedelta(minutes=5)),
        )

        result = asyncio.run(runtime.requeue_sweeper.run(now=NOW))

        assert result.data == 0
        assert sorted(runtime.queue_store.records) == ["a", "b~3", "c"]

    def test_retry_of_a_retry_keeps_the_root_id(self, runtime):
        self._seed(
            runtime,
            _notification("req-1:d1~2", timedelta(minutes=5), error="503", errorCode="provider_unavailable", attempt=2),
        )

        asyncio.run(runtime.requeue_sweeper.run(now=NOW))

        assert "req-1:d1~3" in runtime.queue_store.records

    def test_unknown_outcome_is_not_resent(self, runtime):
        self._seed(
            runtime,
            _notification("req-1:d1", timedelta(minutes=5), error="did not return", errorCode="outcome_unknown"),
        )

        result = asyncio.run(runtime.requeue_sweeper.run(now=NOW))

        assert result.data == 0
        assert list(runtime.queue_store.records) == ["req-1:d1"]
