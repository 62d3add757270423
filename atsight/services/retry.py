"""Exponential backoff for pollers and one-shot retries, built on tenacity."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    before_sleep_log,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    wait_exponential,
    wait_exponential_jitter,
)

from atsight.core.constants import POLL_BACKOFF_JITTER_SECONDS, POLL_BACKOFF_MAX_SECONDS

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ExponentialBackoff:
    """Delay for a fixed-tick poller: doubles per consecutive failure, capped, plus jitter.

    The first failure waits twice the base delay. success() resets it.
    """

    def __init__(
        self,
        base_delay: float,
        max_delay: float = POLL_BACKOFF_MAX_SECONDS,
        jitter: float = POLL_BACKOFF_JITTER_SECONDS,
    ):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.failures = 0
        self._wait = wait_exponential_jitter(initial=base_delay * 2, max=max_delay, jitter=jitter)

    def success(self) -> None:
        self.failures = 0

    def failure(self) -> float:
        """Records a failure and returns the delay before the next attempt."""
        self.failures += 1
        return self.current_delay()

    def current_delay(self) -> float:
        if self.failures == 0:
            return self.base_delay
        # The poller is driven by the scheduler, not by a tenacity loop, so the
        # wait strategy is fed a standalone call state
        state = RetryCallState(retry_object=None, fn=None, args=(), kwargs={})
        state.attempt_number = self.failures
        return self._wait(state)


def _give_up(retry_state: RetryCallState) -> None:
    logger.warning(f"Giving up after {retry_state.attempt_number} attempts")
    return None


# Used by: sensor_source.py (one-shot location fix)
async def retry_async(
    operation: Callable[[], Awaitable[Optional[T]]],
    retries: int,
    base_delay: float,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Optional[T]:
    """Runs `operation` up to 1 + retries times, doubling the delay each time.

    A `None` result or an exception in `retry_on` counts as a failure. Returns
    None once the retries are exhausted; any other exception propagates.
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(retries + 1),
        wait=wait_exponential(multiplier=base_delay),
        retry=retry_if_result(lambda result: result is None) | retry_if_exception_type(retry_on),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        retry_error_callback=_give_up,
        sleep=sleep,
    )
    return await retrying(operation)
