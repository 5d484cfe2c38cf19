"""
Retry policy — bounded attempts with exponential backoff and jitter.

Used by the download manager for transient network failures and by
the runtime provisioner when finalizing a directory swap that may be
blocked by antivirus file locks.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff schedule.

    Args:
        max_attempts: Total attempts including the first one.
        base_delay: Delay before the second attempt, in seconds.
        max_delay: Upper bound for any single delay.
        jitter: Fraction of the delay added as random jitter (0 disables).
    """

    max_attempts: int = 5
    base_delay: float = 3.0
    max_delay: float = 60.0
    jitter: float = 0.0

    def delay_for(self, attempt: int) -> float:
        """Delay to wait before ``attempt`` (1-based). Attempt 1 never waits."""
        if attempt <= 1 or self.base_delay <= 0:
            return 0.0
        delay = min(self.base_delay * (2 ** (attempt - 2)), self.max_delay)
        if self.jitter > 0:
            delay += random.uniform(0, delay * self.jitter)
        return delay

    def attempts(self) -> range:
        """1-based attempt numbers."""
        return range(1, max(1, self.max_attempts) + 1)

    def log_retry(self, what: str, attempt: int, error: object) -> None:
        logger.warning(
            "%s failed (attempt %d/%d): %s",
            what,
            attempt,
            self.max_attempts,
            error,
        )
