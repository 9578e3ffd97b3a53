"""Retry/backoff policy for failed crawl requests."""

import logging
import random
from dataclasses import dataclass, field
from typing import Optional

from hm_crawler.errors import ErrorType

logger = logging.getLogger(__name__)

# Base delay in seconds per failure class; blocking waits longest
DEFAULT_BASE_DELAYS: dict[ErrorType, float] = {
    ErrorType.BLOCKING: 10.0,
    ErrorType.RATE_LIMIT: 5.0,
    ErrorType.NETWORK: 2.0,
    ErrorType.UNKNOWN: 1.0,
}


@dataclass(frozen=True)
class RetryDecision:
    """What to do with a failed request."""

    retry: bool
    delay: float = 0.0
    rotate_identity: bool = False
    reason: str = ""


@dataclass
class BackoffPolicy:
    """
    Exponential backoff with jitter, with a base delay per failure class.

    ``delay = base * multiplier ** retry_count * (1 + U(0, jitter))``, capped
    at ``max_delay``. Parsing and validation failures are never retried and
    a blocking failure asks for a new identity before the retry.
    """

    base_delays: dict[ErrorType, float] = field(default_factory=lambda: dict(DEFAULT_BASE_DELAYS))
    multiplier: float = 2.0
    jitter: float = 0.1
    max_delay: float = 120.0
    max_retries: int = 4
    rng: random.Random = field(default_factory=random.Random)

    @classmethod
    def from_settings(cls, settings) -> "BackoffPolicy":
        return cls(
            base_delays={
                ErrorType.BLOCKING: settings.backoff_blocking_seconds,
                ErrorType.RATE_LIMIT: settings.backoff_rate_limit_seconds,
                ErrorType.NETWORK: settings.backoff_network_seconds,
                ErrorType.UNKNOWN: settings.backoff_generic_seconds,
            },
            max_delay=settings.backoff_max_delay,
            max_retries=settings.max_retries,
        )

    def delay_for(self, error_type: ErrorType, retry_count: int) -> float:
        base = self.base_delays.get(error_type, self.base_delays[ErrorType.UNKNOWN])
        delay = base * (self.multiplier ** retry_count)
        delay *= 1 + self.rng.uniform(0, self.jitter)
        return min(delay, self.max_delay)

    def decide(
        self,
        error_type: ErrorType,
        retry_count: int,
        retryable: bool = True,
        retry_after: Optional[int] = None,
    ) -> RetryDecision:
        """
        Decide whether and when to retry.

        Args:
            error_type: Classified failure
            retry_count: Retries already spent on this request
            retryable: False for failures that can't succeed on retry
            retry_after: Server-provided Retry-After seconds (rate limits)

        Returns:
            RetryDecision
        """
        if not retryable or error_type in (ErrorType.PARSING, ErrorType.VALIDATION):
            return RetryDecision(retry=False, reason=f"{error_type.value} failures are not retried")

        if retry_count >= self.max_retries:
            return RetryDecision(retry=False, reason=f"gave up after {retry_count} retries")

        delay = self.delay_for(error_type, retry_count)
        if error_type == ErrorType.RATE_LIMIT and retry_after:
            delay = min(max(delay, float(retry_after)), self.max_delay)

        return RetryDecision(
            retry=True,
            delay=delay,
            rotate_identity=error_type == ErrorType.BLOCKING,
            reason=f"{error_type.value} retry {retry_count + 1}/{self.max_retries}",
        )
