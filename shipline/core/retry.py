"""Bounded exponential backoff for transient component errors.

Only errors flagged ``retryable`` are retried; anything else propagates on
the first attempt. When attempts run out the last error is re-raised.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from shipline.core.errors import PipelineError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Retry bounds.

    Parameters
    ----------
    attempts:
        Total number of attempts. 1 means no retries.
    base_delay:
        Delay in seconds before the second attempt.
    backoff:
        Multiplier applied to the delay after each failed attempt.
    max_delay:
        Cap on any single delay.
    """

    attempts: int = 4
    base_delay: float = 1.0
    backoff: float = 2.0
    max_delay: float = 30.0

    def compute_delay(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-indexed)."""
        return min(self.base_delay * (self.backoff ** (attempt - 1)), self.max_delay)


def call_with_retry(
    operation: Callable[[], T],
    policy: RetryPolicy,
    *,
    description: str,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run *operation*, retrying retryable ``PipelineError``s with backoff."""
    attempt = 1
    while True:
        try:
            return operation()
        except PipelineError as exc:
            if not exc.retryable or attempt >= policy.attempts:
                raise
            delay = policy.compute_delay(attempt)
            logger.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.1fs",
                description,
                attempt,
                policy.attempts,
                exc,
                delay,
            )
            sleep(delay)
            attempt += 1
