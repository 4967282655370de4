"""
Purpose: Exponential backoff for retryable completion errors.
Only errors with `is_retryable` (rate limit, 5xx, network) are retried;
unauthorized, invalid or undecodable responses fail on the first attempt.
"""

from __future__ import annotations
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, TypeVar

from ..errors import CompletionError, RateLimitedError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 8.0
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def delay_for(self, attempt: int, error: CompletionError) -> float:
        """Seconds to wait after the given (1-based) failed attempt."""
        if isinstance(error, RateLimitedError) and error.retry_after is not None:
            return min(float(error.retry_after), self.max_delay)
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    def should_retry(self, attempt: int, error: BaseException) -> bool:
        return (
            isinstance(error, CompletionError)
            and error.is_retryable
            and attempt < self.attempts
        )

    def run(
        self,
        fn: Callable[[], T],
        *,
        can_retry: Callable[[], bool] = lambda: True,
    ) -> T:
        """
        Call fn until it succeeds or the error is terminal.
        `can_retry` is asked after each failure; the controller uses it to
        stop retrying once part of an answer has been shown.
        """
        attempt = 1
        while True:
            try:
                return fn()
            except CompletionError as exc:
                if not (self.should_retry(attempt, exc) and can_retry()):
                    raise
                delay = self.delay_for(attempt, exc)
                logger.warning(
                    "Attempt %d/%d failed (%s); retrying in %.1fs",
                    attempt,
                    self.attempts,
                    type(exc).__name__,
                    delay,
                )
                self.sleep(delay)
                attempt += 1
