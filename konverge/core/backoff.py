"""Per-identity exponential backoff for failed reconciliations."""

import random
import threading
from typing import Dict, Hashable, Optional


class RateLimiter:
    """Exponential backoff with a cap and jitter.

    The n-th consecutive failure of an item waits ``base * 2**(n-1)`` seconds,
    capped at ``cap``; jitter shaves a random fraction (up to ``jitter``) off
    the delay so many failing items do not retry in lockstep.

    Example:
        >>> limiter = RateLimiter(base=1.0, cap=8.0, jitter=0.0)
        >>> [limiter.when("x") for _ in range(5)]
        [1.0, 2.0, 4.0, 8.0, 8.0]
        >>> limiter.forget("x"); limiter.when("x")
        1.0
    """

    def __init__(
        self,
        base: float = 0.5,
        cap: float = 60.0,
        jitter: float = 0.1,
        rng: Optional[random.Random] = None,
    ):
        if base <= 0 or cap < base:
            raise ValueError("backoff requires 0 < base <= cap")
        if not 0.0 <= jitter < 1.0:
            raise ValueError("jitter must be in [0, 1)")
        self.base = base
        self.cap = cap
        self.jitter = jitter
        self._rng = rng or random.Random()
        self._failures: Dict[Hashable, int] = {}
        self._lock = threading.Lock()

    def when(self, item: Hashable) -> float:
        """Record a failure and return how long to wait before the retry."""
        with self._lock:
            failures = self._failures.get(item, 0) + 1
            self._failures[item] = failures
            jitter = self.jitter * self._rng.random()
        # 2**63 is far past any cap; avoid building huge floats
        exponent = min(failures - 1, 63)
        delay = min(self.cap, self.base * (2 ** exponent))
        return delay * (1.0 - jitter)

    def failures(self, item: Hashable) -> int:
        """Consecutive failures recorded for an item."""
        with self._lock:
            return self._failures.get(item, 0)

    def forget(self, item: Hashable) -> None:
        """Reset an item after a successful reconciliation."""
        with self._lock:
            self._failures.pop(item, None)
