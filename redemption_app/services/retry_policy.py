# redemption_app/services/retry_policy.py
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable

from redemption_app.core.config import Settings


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded exponential backoff for settlement legs, plus the confirmation
    polling cadence. sleep is injected so tests run on a fake clock.

    delay(n) = min(max_delay, base_delay * 2 ** (n - 1)) after the n-th failure.
    """

    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 60.0
    poll_attempts: int = 10
    poll_interval: float = 2.0
    sleep: Callable[[float], None] = field(default=time.sleep, compare=False, repr=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0 or self.poll_interval < 0:
            raise ValueError("delays must be non-negative")

    @classmethod
    def from_settings(cls, settings: Settings, sleep: Callable[[float], None] = time.sleep) -> "RetryPolicy":
        return cls(
            max_attempts=settings.settlement_max_retries,
            base_delay=settings.settlement_backoff_base_seconds,
            max_delay=settings.settlement_backoff_max_seconds,
            poll_attempts=settings.confirmation_poll_attempts,
            poll_interval=settings.confirmation_poll_interval_seconds,
            sleep=sleep,
        )

    def delay_for(self, failures: int) -> float:
        if failures < 1:
            return 0.0
        return min(self.max_delay, self.base_delay * (2 ** (failures - 1)))

    def exhausted(self, failures: int) -> bool:
        return failures >= self.max_attempts

    def backoff(self, failures: int) -> None:
        delay = self.delay_for(failures)
        if delay > 0:
            self.sleep(delay)

    def wait_for_poll(self) -> None:
        if self.poll_interval > 0:
            self.sleep(self.poll_interval)
