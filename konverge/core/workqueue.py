"""Deduplicating, delay-capable work queue of resource identities.

Guarantees:
- an identity is queued at most once, however many times it is added
- an identity is handed to at most one worker at a time
- an identity added while a worker holds it is queued again after done(),
  so no trigger is lost to a concurrent arrival
"""

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, Hashable, List, Optional, Set, Tuple

logger = logging.getLogger(__name__)

IDLE = "Idle"
QUEUED = "Queued"
RUNNING = "Running"


class ShutDown(Exception):
    """Raised by get() once the queue is shut down and drained."""


class WorkQueue:
    """Work queue with coalescing, in-flight tracking and delayed adds.

    Example:
        >>> q = WorkQueue()
        >>> q.add("a"); q.add("a")
        >>> len(q)
        1
        >>> item = q.get()
        >>> q.add("a")      # arrives while "a" is processing
        >>> len(q)
        0
        >>> q.done(item)    # re-queued now
        >>> len(q)
        1
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: Deque[Hashable] = deque()
        self._dirty: Set[Hashable] = set()
        self._processing: Set[Hashable] = set()
        self._waiting: List[Tuple[float, int, Hashable]] = []
        self._ready_at: Dict[Hashable, float] = {}
        self._seq = itertools.count()
        self._shutting_down = False

    def add(self, item: Hashable) -> None:
        """Mark an item as needing processing."""
        with self._cond:
            self._add_locked(item)

    def _add_locked(self, item: Hashable) -> None:
        if self._shutting_down:
            return
        if item in self._dirty:
            return
        self._dirty.add(item)
        if item in self._processing:
            logger.debug(f"{item} changed while processing, re-queued after done")
            return
        self._queue.append(item)
        self._cond.notify()

    def add_after(self, item: Hashable, delay: float) -> None:
        """Add an item once ``delay`` seconds have passed.

        A pending delayed add of the same item keeps the earlier deadline.
        """
        if delay <= 0:
            self.add(item)
            return
        with self._cond:
            if self._shutting_down:
                return
            ready_at = self._clock() + delay
            current = self._ready_at.get(item)
            if current is not None and current <= ready_at:
                return
            self._ready_at[item] = ready_at
            heapq.heappush(self._waiting, (ready_at, next(self._seq), item))
            self._cond.notify_all()

    def _promote_ready_locked(self) -> Optional[float]:
        """Move due delayed items into the queue; return the next deadline."""
        now = self._clock()
        while self._waiting:
            ready_at, _, item = self._waiting[0]
            if self._ready_at.get(item) != ready_at:
                heapq.heappop(self._waiting)  # superseded by an earlier deadline
                continue
            if ready_at > now:
                return ready_at
            heapq.heappop(self._waiting)
            del self._ready_at[item]
            self._add_locked(item)
        return None

    def get(self, timeout: Optional[float] = None) -> Optional[Hashable]:
        """Block until an item is ready and hand it out.

        Args:
            timeout: Seconds to wait; None waits forever

        Returns:
            The item, or None if the timeout expired

        Raises:
            ShutDown: If the queue is shut down and nothing is queued
        """
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                next_ready = self._promote_ready_locked()
                if self._queue:
                    item = self._queue.popleft()
                    self._processing.add(item)
                    self._dirty.discard(item)
                    return item
                if self._shutting_down:
                    raise ShutDown()

                now = self._clock()
                wait: Optional[float] = None
                if deadline is not None:
                    if now >= deadline:
                        return None
                    wait = deadline - now
                if next_ready is not None:
                    until_ready = max(0.0, next_ready - now)
                    wait = until_ready if wait is None else min(wait, until_ready)
                self._cond.wait(wait)

    def done(self, item: Hashable) -> None:
        """Mark processing of an item as complete."""
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty:
                self._queue.append(item)
                self._cond.notify()

    def shut_down(self) -> None:
        """Stop accepting items and wake every blocked getter."""
        with self._cond:
            self._shutting_down = True
            self._waiting.clear()
            self._ready_at.clear()
            self._cond.notify_all()

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    @property
    def clock(self) -> Callable[[], float]:
        return self._clock

    def __len__(self) -> int:
        """Number of items ready to be handed out."""
        with self._cond:
            return len(self._queue)

    def state(self, item: Hashable) -> str:
        """Idle, Queued (ready, dirty or delayed) or Running."""
        with self._cond:
            if item in self._processing:
                return RUNNING
            if item in self._dirty or item in self._ready_at:
                return QUEUED
            return IDLE

    def is_idle(self) -> bool:
        """True when nothing is queued, delayed or being processed."""
        with self._cond:
            return not self._queue and not self._processing and not self._ready_at

    def pending_delayed(self) -> int:
        with self._cond:
            return len(self._ready_at)

    def is_processing(self, item: Hashable) -> bool:
        return self.state(item) == RUNNING

    def is_queued(self, item: Hashable) -> bool:
        return self.state(item) == QUEUED
