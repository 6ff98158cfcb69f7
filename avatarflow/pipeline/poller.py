"""
Bounded polling of an asynchronous external job.

Each attempt waits `interval` seconds, then calls check_status once.
A check that raises StageError is logged and counted as a normal
non-completing attempt. After `max_attempts` non-completions PollTimeout
is raised. Setting the cancel token ends the loop with Cancelled at the
next wait, without waiting out the interval.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from .errors import Cancelled, PollTimeout, StageError
from .models import StageStatus

logger = logging.getLogger(__name__)

CheckStatus = Callable[[], Awaitable[StageStatus]]
OnTick = Callable[[str], Awaitable[None]]


async def _wait(interval: float, cancel_token: Optional[asyncio.Event]) -> None:
    if cancel_token is None:
        await asyncio.sleep(interval)
        return
    try:
        await asyncio.wait_for(cancel_token.wait(), timeout=interval)
    except asyncio.TimeoutError:
        pass
    if cancel_token.is_set():
        raise Cancelled("Cancelled while waiting for external job")


async def poll(
    check_status: CheckStatus,
    interval: float,
    max_attempts: int,
    on_tick: Optional[OnTick] = None,
    cancel_token: Optional[asyncio.Event] = None,
    label: str = "external job",
) -> StageStatus:
    """Drive `check_status` until it reports completion. Returns the final status."""
    for attempt in range(1, max_attempts + 1):
        if cancel_token is not None and cancel_token.is_set():
            raise Cancelled(f"{label} cancelled")
        await _wait(interval, cancel_token)

        try:
            status = await check_status()
        except StageError as e:
            logger.warning(f"{label} poll #{attempt}/{max_attempts} failed: {e}")
            continue

        if status.completed:
            logger.info(f"{label} completed on poll #{attempt}")
            return status

        logger.info(f"{label} poll #{attempt}/{max_attempts}: status={status.status_text}")
        if on_tick is not None:
            await on_tick(status.status_text)

    raise PollTimeout(label, max_attempts, interval)
