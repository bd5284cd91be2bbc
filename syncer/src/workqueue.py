from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections import deque
from collections.abc import Callable, Hashable

from syncer.src.metrics import METRICS


class ExponentialBackoff:
    """Per-item exponential backoff: ``base * 2**failures`` capped at ``max_delay``.

    ``forget`` resets the failure count once an item is processed successfully.
    """

    def __init__(self, base_delay: float = 0.005, max_delay: float = 300.0) -> None:
        if base_delay <= 0:
            raise ValueError("base_delay must be > 0")
        if max_delay < base_delay:
            raise ValueError("max_delay must be >= base_delay")
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._failures: dict[Hashable, int] = {}
        self._lock = threading.Lock()

    def when(self, item: Hashable) -> float:
        with self._lock:
            failures = self._failures.get(item, 0)
            self._failures[item] = failures + 1
        # Cap the exponent so huge failure counts cannot overflow the float.
        return min(self.max_delay, self.base_delay * (2 ** min(failures, 62)))

    def forget(self, item: Hashable) -> None:
        with self._lock:
            self._failures.pop(item, None)

    def num_requeues(self, item: Hashable) -> int:
        with self._lock:
            return self._failures.get(item, 0)


class RateLimitingQueue:
    """De-duplicating work queue with delayed and rate-limited re-adds.

    Guarantees:

    * a key waiting in the queue is stored once no matter how often it is added;
    * a key handed out by :meth:`get` is not handed out again until
      :meth:`done` is called for it; adds in between are remembered and the
      key is queued again on ``done``;
    * after :meth:`shut_down`, :meth:`get` returns ``(None, True)`` and adds
      are ignored, while keys already handed out can still be marked done.
    """

    def __init__(
        self,
        name: str,
        rate_limiter: ExponentialBackoff | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.rate_limiter = rate_limiter or ExponentialBackoff()
        self.clock = clock
        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._waiting: list[tuple[float, int, Hashable]] = []
        self._waiting_due: dict[Hashable, float] = {}
        self._sequence = itertools.count()
        self._shutting_down = False
        self._cond = threading.Condition()
        METRICS.queue_depth.labels(queue=name).set(0)

    def _update_depth(self) -> None:
        METRICS.queue_depth.labels(queue=self.name).set(len(self._queue))

    def _add_locked(self, item: Hashable) -> None:
        if item in self._dirty:
            return
        self._dirty.add(item)
        if item in self._processing:
            return
        self._queue.append(item)
        self._update_depth()
        self._cond.notify()

    def add(self, item: Hashable) -> None:
        with self._cond:
            if self._shutting_down:
                return
            self._add_locked(item)

    def add_after(self, item: Hashable, delay: float) -> None:
        """Queue *item* once *delay* seconds have passed; the earliest pending due time wins."""
        with self._cond:
            if self._shutting_down:
                return
            if delay <= 0:
                self._add_locked(item)
                return
            due_at = self.clock() + delay
            existing = self._waiting_due.get(item)
            if existing is not None and existing <= due_at:
                return
            self._waiting_due[item] = due_at
            heapq.heappush(self._waiting, (due_at, next(self._sequence), item))
            self._cond.notify_all()

    def add_rate_limited(self, item: Hashable) -> None:
        METRICS.queue_retries_total.labels(queue=self.name).inc()
        self.add_after(item, self.rate_limiter.when(item))

    def forget(self, item: Hashable) -> None:
        self.rate_limiter.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return self.rate_limiter.num_requeues(item)

    def _promote_due_locked(self) -> float | None:
        """Move due delayed items into the queue; return seconds until the next one."""
        now = self.clock()
        while self._waiting:
            due_at, _, item = self._waiting[0]
            if self._waiting_due.get(item) != due_at:
                # Superseded by an earlier add_after for the same item.
                heapq.heappop(self._waiting)
                continue
            if due_at > now:
                return due_at - now
            heapq.heappop(self._waiting)
            del self._waiting_due[item]
            self._add_locked(item)
        return None

    def get(self, timeout: float | None = None) -> tuple[Hashable | None, bool]:
        """Block until an item is available.

        Returns ``(item, False)`` for work, ``(None, True)`` on shutdown and
        ``(None, False)`` when *timeout* expires first.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                if self._shutting_down:
                    return None, True
                next_due = self._promote_due_locked()
                if self._queue:
                    item = self._queue.popleft()
                    self._processing.add(item)
                    self._dirty.discard(item)
                    self._update_depth()
                    return item, False

                wait_for = next_due
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return None, False
                    wait_for = remaining if wait_for is None else min(wait_for, remaining)
                self._cond.wait(timeout=wait_for)

    def done(self, item: Hashable) -> None:
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty and not self._shutting_down:
                self._queue.append(item)
                self._update_depth()
                self._cond.notify()

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def pending_delayed(self) -> int:
        with self._cond:
            return len(self._waiting_due)

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)
