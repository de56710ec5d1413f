"""
Rate-limited wrapper for outbound calls to external providers.
Uses aiolimiter for the per-minute quota and tenacity for 429 backoff.
"""
import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

from aiolimiter import AsyncLimiter
from loguru import logger
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from compliance_scout.config import MAX_RETRIES, RETRY_BASE_DELAY, RETRY_MAX_DELAY
from compliance_scout.errors import RateLimitError

T = TypeVar("T")


class RateLimitedCaller:
    """
    Wraps single external calls with a concurrency ceiling, a rolling
    requests-per-minute quota and exponential backoff on rate-limit errors.

    Only RateLimitError triggers a retry. Any other exception propagates to the
    caller untouched. When retries are exhausted `call` returns None so that
    fan-out code can treat the item as failed without aborting its siblings.
    """

    def __init__(
        self,
        name: str,
        max_concurrent: int,
        requests_per_minute: int,
        max_retries: int = MAX_RETRIES,
        base_delay: float = RETRY_BASE_DELAY,
        max_delay: float = RETRY_MAX_DELAY,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.name = name
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep
        self._semaphore = asyncio.Semaphore(max_concurrent)
        # Leaky bucket: requests_per_minute tokens, replenished continuously
        self._limiter = AsyncLimiter(max_rate=requests_per_minute, time_period=60.0)

    async def _limited(self, fn: Callable[[], Awaitable[T]]) -> T:
        async with self._limiter:
            async with self._semaphore:
                return await fn()

    def _log_retry(self, retry_state: RetryCallState) -> None:
        delay = retry_state.next_action.sleep if retry_state.next_action else 0
        logger.debug(
            f"⏳ [{self.name}] rate limited, retry {retry_state.attempt_number}/{self.max_retries} in {delay:.1f}s"
        )

    def _give_up(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            f"⚠️ [{self.name}] giving up after {retry_state.attempt_number} attempts: {exc}"
        )
        return None

    async def call(self, fn: Callable[[], Awaitable[T]], max_retries: Optional[int] = None) -> Optional[T]:
        """
        Execute `fn` under the limiter.

        Args:
            fn: Zero-argument coroutine function performing one external call.
            max_retries: Overrides the caller's retry count for this call only.

        Returns:
            The call's result, or None when every attempt was rate limited.
        """
        retries = self.max_retries if max_retries is None else max_retries
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(RateLimitError),
            stop=stop_after_attempt(retries + 1),
            wait=wait_exponential(multiplier=self.base_delay, max=self.max_delay),
            sleep=self._sleep,
            before_sleep=self._log_retry,
            retry_error_callback=self._give_up,
        )
        return await retrying(self._limited, fn)
