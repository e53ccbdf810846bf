"""Retry policy shared by every worker."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta


@dataclass(frozen=True, slots=True)
class BackoffPolicy:
    """Exponential backoff: ``min(base * 2**n, cap)`` seconds."""

    base_delay_seconds: float = 60.0
    max_delay_seconds: float = 1800.0

    def __post_init__(self) -> None:
        if self.base_delay_seconds < 0:
            raise ValueError("base_delay_seconds must be >= 0")
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")

    def delay_seconds(self, retry_count: int) -> float:
        return backoff_seconds(retry_count, base=self.base_delay_seconds, cap=self.max_delay_seconds)

    def next_attempt_at(self, retry_count: int, now: datetime) -> datetime:
        return now + timedelta(seconds=self.delay_seconds(retry_count))


def backoff_seconds(retry_count: int, *, base: float = 60.0, cap: float = 1800.0) -> float:
    if retry_count < 0:
        raise ValueError("retry_count must be >= 0")
    # 2**n grows without bound; stop doubling once the cap is reached.
    if base <= 0:
        return 0.0
    delay = float(base)
    for _ in range(retry_count):
        delay *= 2
        if delay >= cap:
            return float(cap)
    return min(delay, float(cap))


def should_retry(retry_count: int, max_retries: int) -> bool:
    """A failed attempt is requeued only while another attempt stays within max_retries."""
    return retry_count + 1 < max_retries
