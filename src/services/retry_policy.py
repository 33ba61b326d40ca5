import asyncio
from collections import Counter
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, wait_exponential

from src.core.config import Settings
from src.core.exceptions import (
    RateLimitExceeded,
    SecondaryRateLimitExceeded,
    TransientFetchFailure,
)

logger = structlog.get_logger()

T = TypeVar("T")

PRIMARY = "primary_rate_limit"
SECONDARY = "secondary_rate_limit"
TRANSIENT = "transient"


def classify(exc: BaseException | None) -> str | None:
    """Map an exception to the retry budget it draws from."""
    if isinstance(exc, SecondaryRateLimitExceeded):
        return SECONDARY
    if isinstance(exc, RateLimitExceeded):
        return PRIMARY
    if isinstance(exc, TransientFetchFailure):
        return TRANSIENT
    return None


class RetryPolicy:
    """Single retry policy shared by every GitHub request.

    Rate limits sleep for the server-provided delay and have their own small
    budgets. 5xx and network errors back off exponentially. Each class of
    error is counted separately, and once a budget is spent the last error is
    re-raised unchanged.
    """

    def __init__(
        self,
        primary_retries: int = 2,
        secondary_retries: int = 1,
        transient_retries: int = 3,
        backoff_base: float = 1.0,
        backoff_max: float = 30.0,
        max_rate_limit_wait: float = 900.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.budgets = {
            PRIMARY: primary_retries,
            SECONDARY: secondary_retries,
            TRANSIENT: transient_retries,
        }
        self.max_rate_limit_wait = max_rate_limit_wait
        self._backoff = wait_exponential(multiplier=backoff_base, max=backoff_max)
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> "RetryPolicy":
        return cls(
            primary_retries=settings.primary_rate_limit_retries,
            secondary_retries=settings.secondary_rate_limit_retries,
            transient_retries=settings.server_error_retries,
            backoff_base=settings.backoff_base_seconds,
            backoff_max=settings.backoff_max_seconds,
            max_rate_limit_wait=settings.max_rate_limit_wait_seconds,
            sleep=sleep,
        )

    def _wait(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, RateLimitExceeded):
            return min(max(exc.retry_after or 0.0, 0.0), self.max_rate_limit_wait)
        return self._backoff(retry_state)

    async def call(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Run ``fn`` under the policy."""
        failures: Counter[str] = Counter()

        def stop(retry_state: RetryCallState) -> bool:
            kind = classify(retry_state.outcome.exception())
            failures[kind] += 1
            return failures[kind] > self.budgets.get(kind, 0)

        def before_sleep(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception()
            logger.warning(
                "Retrying GitHub request",
                error_class=classify(exc),
                attempt=retry_state.attempt_number,
                wait_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
                error=str(exc),
            )

        retrying = AsyncRetrying(
            retry=retry_if_exception_type((RateLimitExceeded, TransientFetchFailure)),
            stop=stop,
            wait=self._wait,
            sleep=self._sleep,
            before_sleep=before_sleep,
            reraise=True,
        )
        return await retrying(fn, *args, **kwargs)
