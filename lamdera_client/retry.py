from __future__ import annotations
import random
from dataclasses import dataclass
from typing import Optional

DEFAULT_MAX_RETRIES = 10
DEFAULT_RETRY_BASE_DELAY = 2000
DEFAULT_RETRY_MAX_DELAY = 15000
RETRY_EXPONENTIAL_BASE = 1.5
RETRY_JITTER_RANGE = 1000


@dataclass(frozen=True)
class RetryPolicy:
    """
    Backoff for leader-driven reconnects. All delays are in milliseconds.

    delay(n) = min(base * factor ** (n - 1) + uniform(0, jitter), max_delay)
    """
    base_delay: float = DEFAULT_RETRY_BASE_DELAY
    max_delay: float = DEFAULT_RETRY_MAX_DELAY
    backoff_factor: float = RETRY_EXPONENTIAL_BASE
    jitter_range: float = RETRY_JITTER_RANGE
    max_retries: int = DEFAULT_MAX_RETRIES

    def delay(self, retry_count: int, rng: Optional[random.Random] = None) -> float:
        rng = rng or random
        exponential = self.base_delay * self.backoff_factor ** max(retry_count - 1, 0)
        jitter = rng.uniform(0, self.jitter_range)
        return max(0.0, min(exponential + jitter, self.max_delay))

    def should_retry(self, retry_count: int) -> bool:
        return retry_count <= self.max_retries

    def is_retrying(self, retry_count: int) -> bool:
        """A reconnect is in flight for this count (sends are dropped meanwhile)"""
        return 0 < retry_count <= self.max_retries
