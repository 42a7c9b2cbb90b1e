"""
Rate Limiter

Fixed-window request counting per identity (account id or client address).

Each call atomically increments the counter of the current window in the
counter store. A fixed window accepts up to twice the limit around a window
boundary; callers that need smoother limiting must layer it on top.

Every call names its failure policy: processing endpoints fail CLOSED (the
request is refused when counters cannot be read), read-only endpoints fail
OPEN (the request passes and a warning is logged).
"""

import logging
import math
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict

from docjobs.cache import AbstractCounterStore
from docjobs.exceptions import CounterStoreUnavailable, ServiceUnavailable

logger = logging.getLogger(__name__)


class FailurePolicy(str, Enum):
    """Behaviour when the counter store is unreachable"""
    OPEN = "open"
    CLOSED = "closed"


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: int  # unix seconds

    def to_headers(self, limit: int) -> Dict[str, str]:
        """Standard X-RateLimit-* response headers"""
        return {
            'X-RateLimit-Limit': str(limit),
            'X-RateLimit-Remaining': str(self.remaining),
            'X-RateLimit-Reset': str(self.reset_at),
        }


class RateLimiter:
    """
    Fixed-window rate limiter on top of a counter store.

    Usage:
        limiter = RateLimiter(InMemoryCounterStore())

        result = limiter.check_and_increment(
            'acc_123', limit=30, window_seconds=60, policy=FailurePolicy.CLOSED
        )
        if not result.allowed:
            ...
    """

    KEY_PREFIX = 'ratelimit'

    def __init__(self, store: AbstractCounterStore, clock: Callable[[], float] = time.time):
        self.store = store
        self.clock = clock

    @classmethod
    def window_key(cls, identity: str, window_start: int) -> str:
        return f"{cls.KEY_PREFIX}:{identity}:{window_start}"

    def _window(self, window_seconds: int):
        window_start = int(math.floor(self.clock() / window_seconds) * window_seconds)
        return window_start, window_start + window_seconds

    def check_and_increment(
        self,
        identity: str,
        limit: int,
        window_seconds: int,
        cost: int = 1,
        *,
        policy: FailurePolicy
    ) -> RateLimitResult:
        """
        Count ``cost`` hits for ``identity`` in the current window.

        Args:
            identity: Account id or client address
            limit: Maximum hits per window
            window_seconds: Window length
            cost: Hits consumed by this call
            policy: What to do when the counter store is unreachable

        Returns:
            RateLimitResult with ``allowed = new_count <= limit``

        Raises:
            ServiceUnavailable: Counter store unreachable under FailurePolicy.CLOSED
        """
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        window_start, reset_at = self._window(window_seconds)
        key = self.window_key(identity, window_start)

        try:
            count = self.store.incr(key, cost, window_seconds)
        except CounterStoreUnavailable:
            if FailurePolicy(policy) is FailurePolicy.CLOSED:
                logger.error(f"Rate limit check failed closed for {identity}")
                raise ServiceUnavailable("Rate limiting unavailable, please retry")
            logger.warning(f"Rate limit check failed open for {identity}")
            return RateLimitResult(allowed=True, remaining=limit, reset_at=reset_at)

        allowed = count <= limit
        if not allowed:
            logger.info(f"Rate limit exceeded for {identity}: {count}/{limit}")
        return RateLimitResult(allowed=allowed, remaining=max(0, limit - count), reset_at=reset_at)

    def get_usage(self, identity: str, window_seconds: int) -> Dict[str, Any]:
        """Current window usage without counting a hit"""
        window_start, reset_at = self._window(window_seconds)
        return {
            'identity': identity,
            'count': self.store.get(self.window_key(identity, window_start)),
            'window_start': window_start,
            'reset_at': reset_at,
        }
