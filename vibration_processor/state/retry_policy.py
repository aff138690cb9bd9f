"""
Retry Policy
Retry budget and exponential backoff schedule
"""

import random
from dataclasses import dataclass
from typing import Dict


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry budget for failed records

    A record is dead-lettered once its retry_count reaches max_retries.
    The delay before re-enqueueing attempt n is
    ``min(base * multiplier ** (n - 1), max_delay)`` plus up to
    ``jitter`` of that value.
    """

    max_retries: int = 5
    base_delay_seconds: float = 1.0
    multiplier: float = 2.0
    max_delay_seconds: float = 60.0
    jitter: float = 0.1

    @classmethod
    def from_config(cls, config: Dict) -> "RetryPolicy":
        retry_config = config.get("retry", {})
        return cls(
            max_retries=int(retry_config.get("max_retries", 5)),
            base_delay_seconds=float(retry_config.get("base_delay_seconds", 1.0)),
            multiplier=float(retry_config.get("multiplier", 2.0)),
            max_delay_seconds=float(retry_config.get("max_delay_seconds", 60.0)),
            jitter=float(retry_config.get("jitter", 0.1)),
        )

    def exhausted(self, retry_count: int) -> bool:
        return retry_count >= self.max_retries

    def delay_for(self, attempt: int) -> float:
        """Backoff in seconds before attempt number ``attempt`` (1-based)"""
        attempt = max(attempt, 1)
        delay = min(
            self.base_delay_seconds * self.multiplier ** (attempt - 1),
            self.max_delay_seconds,
        )
        if self.jitter > 0:
            delay += random.uniform(0, delay * self.jitter)
        return delay
