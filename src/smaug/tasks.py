"""
Shared async task utilities.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Coroutine
from typing import Any

from loguru import logger

from smaug.constants import BACKOFF_BASE_SECONDS, MAX_BACKOFF_SECONDS


async def run_periodic_task(
    name: str,
    callback: Callable[[], Coroutine[Any, Any, None]],
    interval: float,
    initial_delay: float = 0.0,
    running_check: Callable[[], bool] | None = None,
) -> None:
    """
    Run a callback periodically until cancelled or running_check returns False.

    Args:
        name: Human-readable task name for logging
        callback: Async function to call each interval
        interval: Seconds between invocations
        initial_delay: Seconds to wait before first invocation
        running_check: Optional callable returning False to stop the task
    """
    if initial_delay > 0:
        await asyncio.sleep(initial_delay)

    while running_check is None or running_check():
        try:
            await asyncio.sleep(interval)
            await callback()
        except asyncio.CancelledError:
            logger.info(f"{name} task cancelled")
            break
        except Exception as e:
            logger.error(f"Error in {name}: {e}")

    logger.info(f"{name} task stopped")


def backoff_delay(
    attempt: int,
    base: float = BACKOFF_BASE_SECONDS,
    cap: float = MAX_BACKOFF_SECONDS,
) -> float:
    """
    Exponential backoff delay for the given (1-based) attempt.

    Args:
        attempt: Number of consecutive failures so far
        base: Delay after the first failure
        cap: Maximum delay

    Returns:
        Seconds to wait
    """
    if attempt <= 0:
        return 0.0
    return min(cap, base * (2 ** (min(attempt, 32) - 1)))


async def wait_for_event(event: asyncio.Event, timeout: float) -> bool:
    """
    Wait until ``event`` is set or ``timeout`` expires, then clear it.

    Returns:
        True if the event fired
    """
    try:
        await asyncio.wait_for(event.wait(), timeout=timeout)
    except asyncio.TimeoutError:
        return False
    event.clear()
    return True
