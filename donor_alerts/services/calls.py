# donor_alerts/services/calls.py
"""
Timeout policy for store and gateway calls.

Reads are idempotent, so they get one retry after a timeout or store
error. Writes and gateway sends get exactly one attempt.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, TypeVar

from donor_alerts.errors import GatewayError, StoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def read_call(fn: Callable[..., Awaitable[T]], *args: Any, timeout: float, retries: int = 1) -> T:
    attempt = 0
    while True:
        try:
            return await asyncio.wait_for(fn(*args), timeout=timeout)
        except (asyncio.TimeoutError, StoreError) as e:
            if attempt >= retries:
                if isinstance(e, asyncio.TimeoutError):
                    raise StoreError(f"read timed out after {timeout}s") from e
                raise
            attempt += 1
            logger.warning("Store read failed (%s), retrying", e or "timeout")


async def write_call(fn: Callable[..., Awaitable[T]], *args: Any, timeout: float) -> T:
    try:
        return await asyncio.wait_for(fn(*args), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise StoreError(f"write timed out after {timeout}s") from e


async def gateway_call(fn: Callable[..., T], *args: Any, timeout: float) -> T:
    """
    Runs a blocking gateway call in a worker thread, bounded by `timeout`.
    The worker cannot be stopped and may still deliver after the bound, so
    hitting it reports outcome_unknown, which is never resent.
    """
    try:
        return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise GatewayError(
            f"gateway call did not return within {timeout}s", code="outcome_unknown", permanent=True
        ) from e
