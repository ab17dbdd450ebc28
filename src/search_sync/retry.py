"""Retry policy for bulk imports: bounded exponential backoff with jitter."""

import logging
import random
import time
from typing import Callable, Optional

from .config import Settings
from .models import OUTCOME_TRANSIENT, ImportOutcome

logger = logging.getLogger(__name__)


class RetryPolicy:
    def __init__(
        self,
        attempts: int = 3,
        base_s: float = 0.5,
        max_s: float = 5.0,
        jitter_fraction: float = 0.2,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.attempts = max(int(attempts), 1)
        self.base_s = base_s
        self.max_s = max_s
        self.jitter_fraction = jitter_fraction
        self.sleep = sleep
        self.rng = rng or random.Random()

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "RetryPolicy":
        return cls(
            attempts=settings.retry_attempts,
            base_s=settings.retry_base_s,
            max_s=settings.retry_max_s,
            jitter_fraction=settings.retry_jitter_fraction,
            **kwargs,
        )

    def should_retry(self, attempt: int, outcome: ImportOutcome) -> bool:
        """Only transient outcomes are retried, and only below the attempt limit."""
        return outcome.kind == OUTCOME_TRANSIENT and attempt < self.attempts

    def next_delay(self, attempt: int) -> float:
        """Delay before attempt ``attempt + 1``: min(base * 2^(attempt-1), max) +/- jitter."""
        delay = min(self.base_s * (2 ** max(attempt - 1, 0)), self.max_s)
        if self.jitter_fraction > 0 and delay > 0:
            jitter = delay * self.jitter_fraction
            delay += self.rng.uniform(-jitter, jitter)
        return max(delay, 0.0)

    def wait(self, attempt: int) -> float:
        delay = self.next_delay(attempt)
        logger.debug("Retrying after attempt %d in %.2fs", attempt, delay)
        self.sleep(delay)
        return delay
