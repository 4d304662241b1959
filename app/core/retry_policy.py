"""
Retry policy value object shared by the inbox processor and the DLQ sweep.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from app.core.config import settings
from app.core.time_utils import utcnow


def calculate_backoff_seconds(
    retry_count: int,
    *,
    base_seconds: int,
    max_backoff_seconds: int,
) -> int:
    """
    Exponential backoff with a hard upper bound.

        backoff = base_seconds * (2 ** retry_count)

    The result is capped at max_backoff_seconds and avoids computing huge
    powers when retry_count is unexpectedly large.
    """
    if retry_count < 0:
        retry_count = 0

    if base_seconds <= 0 or max_backoff_seconds <= 0:
        return 0

    if base_seconds >= max_backoff_seconds:
        return max_backoff_seconds

    # Smallest exponent whose multiplier reaches ceil(max/base)
    required_multiplier = (max_backoff_seconds + base_seconds - 1) // base_seconds
    threshold = (required_multiplier - 1).bit_length()
    if retry_count >= threshold:
        return max_backoff_seconds

    return min(base_seconds * (1 << retry_count), max_backoff_seconds)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    base_seconds: int
    max_backoff_seconds: int

    def backoff_seconds(self, attempts: int) -> int:
        return calculate_backoff_seconds(
            attempts,
            base_seconds=self.base_seconds,
            max_backoff_seconds=self.max_backoff_seconds,
        )

    def next_retry_at(self, attempts: int, now: datetime | None = None) -> datetime:
        return (now or utcnow()) + timedelta(seconds=self.backoff_seconds(attempts))

    def exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts


def webhook_retry_policy() -> RetryPolicy:
    return RetryPolicy(
        max_attempts=settings.WEBHOOK_MAX_ATTEMPTS,
        base_seconds=settings.WEBHOOK_RETRY_BASE_SECONDS,
        max_backoff_seconds=settings.WEBHOOK_MAX_BACKOFF_SECONDS,
    )


def dead_letter_retry_policy() -> RetryPolicy:
    return RetryPolicy(
        max_attempts=settings.DLQ_MAX_RETRIES,
        base_seconds=settings.DLQ_RETRY_BASE_SECONDS,
        max_backoff_seconds=settings.WEBHOOK_MAX_BACKOFF_SECONDS,
    )
