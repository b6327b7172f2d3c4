from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from core.settings import SYNC, RetrySettings
from datetime_utils import utc_now


@dataclass(frozen=True)
class RetryPolicy:
    """Capped exponential backoff with a bounded number of attempts.

    ``attempts`` is the number of transient failures already recorded for an
    operation. The first retry waits ``base_delay``; every further failure
    multiplies the wait by ``factor`` until ``max_delay`` is reached. Once
    ``max_attempts`` failures have been recorded the operation is no longer
    retried automatically.
    """

    base_delay: float = 1.0
    factor: float = 2.0
    max_delay: float = 30.0
    max_attempts: int = 5

    def __post_init__(self) -> None:
        if self.base_delay <= 0 or self.max_delay < self.base_delay:
            raise ValueError("delays must satisfy 0 < base_delay <= max_delay")
        if self.factor < 1:
            raise ValueError("factor must be >= 1")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    @classmethod
    def from_settings(cls, settings: Optional[RetrySettings] = None) -> "RetryPolicy":
        cfg = settings or SYNC.retry
        return cls(
            base_delay=cfg.base_delay_sec,
            factor=cfg.factor,
            max_delay=cfg.max_delay_sec,
            max_attempts=cfg.max_attempts,
        )

    def delay(self, attempts: int) -> float:
        if attempts <= 0:
            return 0.0
        value = self.base_delay
        for _ in range(attempts - 1):
            value *= self.factor
            if value >= self.max_delay:
                return self.max_delay
        return min(self.max_delay, value)

    def next_retry_at(self, attempts: int, now: Optional[datetime] = None) -> datetime:
        return (now or utc_now()) + timedelta(seconds=self.delay(attempts))

    def is_exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts


__all__ = ["RetryPolicy"]
