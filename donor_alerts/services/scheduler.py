# donor_alerts/services/scheduler.py
import asyncio
import logging
from typing import Awaitable, Callable

from donor_alerts.models.result import HandlerResult

logger = logging.getLogger(__name__)


async def run_periodically(
    name: str,
    job: Callable[[], Awaitable[HandlerResult]],
    interval_seconds: float,
) -> None:
    """
    Runs `job` every `interval_seconds` until cancelled. A failed or crashing
    run is logged and the loop carries on with the next tick.
    """
    logger.info("[%s] scheduled every %ss", name, interval_seconds)
    while True:
        try:
            result = await job()
            if not result.success:
                logger.error("[%s] run failed: %s", name, result.error)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("[%s] run crashed", name)
        await asyncio.sleep(interval_seconds)
