"""Timeout policy and batching helpers."""
import asyncio
import time

import pytest

from donor_alerts.errors import GatewayError, StoreError
from donor_alerts.infra.push_gateway import TRANSIENT_ERROR_CODES
from donor_alerts.services.batching import chunked
from donor_alerts.services.calls import gateway_call, read_call, write_call


class TestChunked:
    def test_groups_of_ten(self):
        groups = list(chunked(range(23), 10))

        assert [len(g) for g in groups] == [10, 10, 3]
        assert groups[2] == [20, 21, 22]

    def test_empty(self):
        assert list(chunked([], 10)) == []

    def test_rejects_zero_size(self):
        with pytest.raises(ValueError):
            list(chunked([1], 0))


class TestReadCall:
    def test_retries_once_after_store_error(self):
        calls = []

        async def flaky(x):
            calls.append(x)
            if len(calls) == 1:
                raise StoreError("blip")
            return x * 2

        assert asyncio.run(read_call(flaky, 21, timeout=1)) == 42
        assert calls == [21, 21]

    def test_gives_up_after_retry(self):
        async def slow():
            await asyncio.sleep(1)

        with pytest.raises(StoreError, match="timed out"):
            asyncio.run(read_call(slow, timeout=0.01))


class TestWriteCall:
    def test_single_attempt(self):
        calls = []

        async def failing():
            calls.append(1)
            raise StoreError("down")

        with pytest.raises(StoreError):
            asyncio.run(write_call(failing, timeout=1))
        assert calls == [1]

    def test_timeout_becomes_store_error(self):
        async def slow():
            await asyncio.sleep(1)

        with pytest.raises(StoreError, match="write timed out"):
            asyncio.run(write_call(slow, timeout=0.01))


class TestGatewayCall:
    def test_runs_blocking_function(self):
        assert asyncio.run(gateway_call(lambda a, b: a + b, 1, 2, timeout=1)) == 3

    def test_overrun_is_not_resent(self):
        # the worker thread may still deliver after the bound
        with pytest.raises(GatewayError) as exc_info:
            asyncio.run(gateway_call(time.sleep, 0.5, timeout=0.01))

        assert exc_info.value.code == "outcome_unknown"
        assert exc_info.value.permanent is True
        assert exc_info.value.code not in TRANSIENT_ERROR_CODES
