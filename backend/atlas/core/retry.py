"""
Bounded retry combinator with cancellation support.

Used for health-gate polling: run an async probe up to ``max_attempts`` times,
waiting ``interval_seconds`` between attempts, and stop early when the probe
succeeds or the cancel event is set.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


@dataclass
class RetryOutcome:
    """Result of a bounded retry loop."""
    succeeded: bool
    attempts: int
    cancelled: bool = False
    aborted: bool = False


async def wait_or_cancel(interval_seconds: float, cancel: Optional[asyncio.Event] = None) -> bool:
    """
    Sleep for ``interval_seconds`` unless ``cancel`` is set first.

    Returns:
        True if the wait was cut short by cancellation
    """
    if cancel is None:
        await asyncio.sleep(interval_seconds)
        return False
    if cancel.is_set():
        return True
    try:
        await asyncio.wait_for(cancel.wait(), timeout=interval_seconds)
        return True
    except asyncio.TimeoutError:
        return False


async def retry_until(
    probe: Callable[[], Awaitable[bool]],
    max_attempts: int,
    interval_seconds: float,
    cancel: Optional[asyncio.Event] = None,
    abort: Optional[Callable[[], Awaitable[bool]]] = None,
) -> RetryOutcome:
    """
    Call ``probe`` until it returns True or the attempt budget runs out.

    Args:
        probe: Async callable returning True on success. Exceptions count as failures.
        max_attempts: Maximum number of probe calls (at least one is made)
        interval_seconds: Sleep between attempts (not after the last one)
        cancel: Optional event; when set, the loop ends within one interval
        abort: Optional async check run after each failed attempt; returning
               True ends the loop early (e.g. the process already crashed)

    Returns:
        RetryOutcome describing how the loop ended
    """
    attempts = max(1, max_attempts)

    for attempt in range(1, attempts + 1):
        if cancel is not None and cancel.is_set():
            return RetryOutcome(succeeded=False, attempts=attempt - 1, cancelled=True)

        try:
            if await probe():
                return RetryOutcome(succeeded=True, attempts=attempt)
        except Exception as e:
            logger.debug(f"Probe attempt {attempt}/{attempts} raised: {e}")

        if abort is not None and await abort():
            return RetryOutcome(succeeded=False, attempts=attempt, aborted=True)

        if attempt < attempts:
            if await wait_or_cancel(interval_seconds, cancel):
                return RetryOutcome(succeeded=False, attempts=attempt, cancelled=True)

    return RetryOutcome(succeeded=False, attempts=attempts)
