# node_deployer/core/retry.py
"""Bounded exponential backoff shared by the orchestrator and cluster calls."""

import logging
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from node_deployer.core.errors import TransientClusterError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Two retry levels.

    - Attempt level: a whole build/schedule attempt, ``max_attempts`` times,
      sleeping ``base_delay * factor ** (n - 1)`` (capped) between attempts.
    - Call level: a single cluster call retried ``call_attempts`` times on
      transient errors before the attempt is considered failed.
    """
    max_attempts: int = 3
    base_delay: float = 10.0
    factor: float = 3.0
    max_delay: float = 90.0

    call_attempts: int = 3
    call_base_delay: float = 1.0
    call_max_delay: float = 5.0

    def delay_for(self, attempt: int) -> float:
        return backoff_delay(attempt, self.base_delay, self.factor, self.max_delay)


def backoff_delay(attempt: int, base: float, factor: float, max_delay: float) -> float:
    """Delay before retry number ``attempt`` (1-based)."""
    if attempt < 1:
        return 0.0
    return min(base * (factor ** (attempt - 1)), max_delay)


def call_with_retry(
    fn: Callable[[], T],
    policy: RetryPolicy,
    *,
    label: str = "cluster call",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Run ``fn``, retrying silently on TransientClusterError.

    The last TransientClusterError propagates once the call budget is spent.
    Any other exception propagates immediately.
    """
    attempt = 1
    while True:
        try:
            return fn()
        except TransientClusterError as e:
            if attempt >= policy.call_attempts:
                raise
            delay = backoff_delay(attempt, policy.call_base_delay, 2.0, policy.call_max_delay)
            logger.debug(f"[retry] {label} transient failure ({e}), retry {attempt} in {delay:.1f}s")
            sleep(delay)
            attempt += 1
