"""
Bounded exponential backoff.

Used by the registration service (optimistic-write conflicts) and the profile
synchronizer (claims / identity writes that must be retried to completion).
"""

from __future__ import annotations

import logging
import random
import time
from typing import Callable, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")

logger = logging.getLogger(__name__)


class RetryPolicy(BaseModel):
    max_attempts: int = Field(5, ge=1)
    base_delay_seconds: float = Field(0.02, ge=0)
    max_delay_seconds: float = Field(0.5, ge=0)
    jitter: bool = True


def backoff_delay(policy: RetryPolicy, attempt: int) -> float:
    """Delay before attempt `attempt + 1` (attempt is 0-based)."""
    delay = min(float(policy.max_delay_seconds), float(policy.base_delay_seconds) * (2**attempt))
    if policy.jitter and delay > 0:
        delay = random.uniform(delay / 2, delay)
    return delay


def retry_call(
    fn: Callable[[], T],
    *,
    policy: RetryPolicy,
    retry_on: tuple[type[BaseException], ...],
    what: str,
) -> T:
    """Call `fn` until it succeeds or `policy.max_attempts` is used up.

    Only exceptions in `retry_on` are retried; the last one is re-raised once the
    budget is exhausted. Anything else propagates immediately.
    """
    max_attempts = int(policy.max_attempts)
    for attempt in range(max_attempts):
        try:
            return fn()
        except retry_on as exc:
            if attempt + 1 >= max_attempts:
                raise
            delay = backoff_delay(policy, attempt)
            logger.warning(
                "%s failed (%s); retrying in %.3fs (attempt %s/%s)",
                what,
                type(exc).__name__,
                delay,
                attempt + 1,
                max_attempts,
            )
            time.sleep(delay)
    raise RuntimeError(f"{what}: retry loop exited without a result (unexpected).")
