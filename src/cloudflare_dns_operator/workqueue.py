"""Deduplicating work queue with delayed and rate-limited adds.

Semantics:
  * a key is queued at most once, no matter how often it is added;
  * a key handed out by ``get`` is not handed out again until ``done``;
    adds arriving in between are coalesced into a single follow-up;
  * delayed adds keep only the earliest deadline per key;
  * ``add_rate_limited`` backs off exponentially per key until ``forget``.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, Hashable, Optional, Set

logger = logging.getLogger(__name__)


class WorkQueue:
    def __init__(
        self,
        base_delay: float = 5.0,
        max_delay: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: Deque[Hashable] = deque()
        self._dirty: Set[Hashable] = set()
        self._processing: Set[Hashable] = set()
        self._waiting: Dict[Hashable, float] = {}
        self._failures: Dict[Hashable, int] = {}
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def _add_locked(self, key: Hashable) -> None:
        self._waiting.pop(key, None)
        if key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._cond.notify()

    def add(self, key: Hashable) -> None:
        with self._cond:
            if self._shutting_down:
                return
            self._add_locked(key)

    def add_after(self, key: Hashable, delay: float) -> None:
        if delay <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            deadline = self._clock() + delay
            current = self._waiting.get(key)
            if current is None or deadline < current:
                self._waiting[key] = deadline
                self._cond.notify()

    def backoff(self, key: Hashable) -> float:
        """Delay the next ``add_rate_limited`` of ``key`` would use."""
        with self._cond:
            failures = self._failures.get(key, 0)
        return min(self._base_delay * (2 ** failures), self._max_delay)

    def add_rate_limited(self, key: Hashable, retry_after: Optional[float] = None) -> float:
        """Re-add ``key`` after its backoff delay and return that delay.

        A server supplied ``retry_after`` raises the delay, never lowers it.
        """
        delay = self.backoff(key)
        with self._cond:
            self._failures[key] = self._failures.get(key, 0) + 1
        if retry_after is not None:
            delay = max(delay, retry_after)
        self.add_after(key, delay)
        return delay

    def forget(self, key: Hashable) -> None:
        with self._cond:
            self._failures.pop(key, None)

    def num_requeues(self, key: Hashable) -> int:
        with self._cond:
            return self._failures.get(key, 0)

    def _promote_due_locked(self) -> None:
        now = self._clock()
        for key, deadline in list(self._waiting.items()):
            if deadline <= now:
                self._add_locked(key)

    def get(self, timeout: Optional[float] = None) -> Optional[Hashable]:
        """Block until a key is ready and mark it as processing.

        Returns None after ``shutdown`` or when ``timeout`` expires.
        """
        end = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                if self._shutting_down:
                    return None
                self._promote_due_locked()
                if self._queue:
                    key = self._queue.popleft()
                    self._dirty.discard(key)
                    self._processing.add(key)
                    return key

                wait = None
                if self._waiting:
                    wait = max(0.0, min(self._waiting.values()) - self._clock())
                if end is not None:
                    remaining = end - self._clock()
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(wait)

    def done(self, key: Hashable) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty and not self._shutting_down:
                self._queue.append(key)
                self._cond.notify()

    def shutdown(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()
        logger.debug("Work queue shut down")
