"""
Retry-with-backoff policy shared by the subscription lifecycle and the PayPal gateway.

Only errors marked retryable (BillingError.retryable) are retried; everything
else propagates on the first attempt. After the last attempt the final error
is re-raised unchanged so callers still see its kind.
"""
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from app.core.errors import BillingError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, BillingError) and exc.retryable


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "[Retry] %s failed (attempt %s): %s",
        getattr(retry_state.fn, "__name__", "operation"),
        retry_state.attempt_number,
        exc,
    )


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 0.5  # seconds; doubled after every failed attempt
    max_delay: float = 8.0
    jitter: float = 0.25  # random extra seconds added to each wait

    def _retry_kwargs(self) -> dict:
        return dict(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.base_delay, max=self.max_delay) + wait_random(0, self.jitter),
            retry=retry_if_exception(is_retryable),
            before_sleep=_log_retry,
            reraise=True,
        )

    def call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run a blocking operation (database work) under this policy."""
        return Retrying(**self._retry_kwargs())(fn, *args, **kwargs)

    async def acall(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Run a coroutine function (gateway call) under this policy."""
        return await AsyncRetrying(**self._retry_kwargs())(fn, *args, **kwargs)


DEFAULT_RETRY_POLICY = RetryPolicy()
