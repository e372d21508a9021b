"""Deduplicating work queues used to feed reconciliation workers.

Three layers, each building on the previous one:

- :class:`WorkQueue` keeps a *dirty* set (pending keys) and a *processing*
  set (keys handed to a worker and not yet ``done``). A key is never queued
  twice and never processed by two workers at once.
- :class:`DelayingQueue` adds :meth:`~DelayingQueue.add_after`, backed by a
  heap and a waiter thread.
- :class:`RateLimitingQueue` asks a rate limiter how long to wait before
  re-adding a key that failed.
"""

from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections import deque
from collections.abc import Hashable
from typing import Callable, Protocol

import structlog

logger = structlog.get_logger(__name__)


class WorkQueue:
    """FIFO queue with per-key coalescing and in-flight tracking.

    Parameters
    ----------
    name:
        Used only for log context.
    """

    def __init__(self, name: str = "") -> None:
        self.name = name
        self._cond = threading.Condition()
        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._shutting_down = False

    def add(self, item: Hashable) -> None:
        """Mark *item* as needing processing."""
        with self._cond:
            if self._shutting_down:
                return
            if item in self._dirty:
                return
            self._dirty.add(item)
            if item in self._processing:
                # Re-queued by done()
                return
            self._queue.append(item)
            self._cond.notify()

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def get(self, timeout: float | None = None) -> tuple[Hashable | None, bool]:
        """Block until an item is ready.

        Returns ``(item, shutdown)``. ``shutdown`` is ``True`` only once the
        queue has been shut down and is empty. With a *timeout*, returns
        ``(None, False)`` if nothing became ready in time.
        """
        with self._cond:
            if not self._cond.wait_for(lambda: self._queue or self._shutting_down, timeout):
                return None, False
            if not self._queue:
                return None, True
            item = self._queue.popleft()
            self._processing.add(item)
            self._dirty.discard(item)
            return item, False

    def done(self, item: Hashable) -> None:
        """Mark *item* as processed. Must be called once per :meth:`get`."""
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty:
                self._queue.append(item)
                self._cond.notify()
            elif not self._processing:
                self._cond.notify_all()

    def shut_down(self) -> None:
        """Stop accepting items and wake every blocked :meth:`get`. Idempotent."""
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    def shut_down_with_drain(self, timeout: float | None = None) -> bool:
        """Shut down, then wait for in-flight items to be marked done.

        Returns ``False`` if *timeout* elapsed with items still processing.
        """
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()
            drained = self._cond.wait_for(lambda: not self._processing, timeout)
        if not drained:
            logger.warning("workqueue_drain_timeout", queue=self.name)
        return drained

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def processing(self) -> set[Hashable]:
        """Snapshot of keys currently handed out to workers."""
        with self._cond:
            return set(self._processing)


class DelayingQueue(WorkQueue):
    """:class:`WorkQueue` that can hold items back for a while before adding them."""

    def __init__(self, name: str = "", clock: Callable[[], float] = time.monotonic) -> None:
        super().__init__(name)
        self._clock = clock
        self._waiting_cond = threading.Condition()
        # (ready_at, seq, item); stale entries are skipped via _ready_at
        self._waiting: list[tuple[float, int, Hashable]] = []
        self._ready_at: dict[Hashable, float] = {}
        self._seq = itertools.count()
        self._stopped = False
        self._waiter = threading.Thread(
            target=self._waiting_loop, daemon=True, name=f"workqueue-delay-{name or 'default'}"
        )
        self._waiter.start()

    def add_after(self, item: Hashable, delay: float) -> None:
        """Add *item* after *delay* seconds. Non-positive delays add immediately."""
        if self.shutting_down:
            return
        if delay <= 0:
            self.add(item)
            return
        ready_at = self._clock() + delay
        with self._waiting_cond:
            existing = self._ready_at.get(item)
            if existing is not None and existing <= ready_at:
                return
            self._ready_at[item] = ready_at
            heapq.heappush(self._waiting, (ready_at, next(self._seq), item))
            self._waiting_cond.notify()

    def waiting(self) -> int:
        """Number of items held back by :meth:`add_after`."""
        with self._waiting_cond:
            return len(self._ready_at)

    def shut_down(self) -> None:
        super().shut_down()
        with self._waiting_cond:
            self._stopped = True
            self._waiting_cond.notify_all()

    def shut_down_with_drain(self, timeout: float | None = None) -> bool:
        with self._waiting_cond:
            self._stopped = True
            self._waiting_cond.notify_all()
        return super().shut_down_with_drain(timeout)

    def _waiting_loop(self) -> None:
        while True:
            ready: list[Hashable] = []
            with self._waiting_cond:
                if self._stopped:
                    return
                now = self._clock()
                while self._waiting and self._waiting[0][0] <= now:
                    ready_at, _, item = heapq.heappop(self._waiting)
                    if self._ready_at.get(item) == ready_at:
                        del self._ready_at[item]
                        ready.append(item)
                if not ready:
                    timeout = self._waiting[0][0] - now if self._waiting else None
                    self._waiting_cond.wait(timeout)
                    continue
            for item in ready:
                self.add(item)


# ---------------------------------------------------------------------------
# Rate limiters
# ---------------------------------------------------------------------------


class RateLimiter(Protocol):
    def when(self, item: Hashable) -> float: ...

    def num_requeues(self, item: Hashable) -> int: ...

    def forget(self, item: Hashable) -> None: ...


class ItemExponentialFailureRateLimiter:
    """Per-item exponential backoff: ``base_delay * 2**failures``, capped at ``max_delay``."""

    def __init__(self, base_delay: float = 0.005, max_delay: float = 1000.0) -> None:
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._lock = threading.Lock()
        self._failures: dict[Hashable, int] = {}

    def when(self, item: Hashable) -> float:
        with self._lock:
            exp = self._failures.get(item, 0)
            self._failures[item] = exp + 1
        try:
            backoff = self._base_delay * (2**exp)
        except OverflowError:
            return self._max_delay
        return min(backoff, self._max_delay)

    def num_requeues(self, item: Hashable) -> int:
        with self._lock:
            return self._failures.get(item, 0)

    def forget(self, item: Hashable) -> None:
        with self._lock:
            self._failures.pop(item, None)


class BucketRateLimiter:
    """Overall token bucket: *qps* tokens per second, holding at most *burst*."""

    def __init__(self, qps: float = 10.0, burst: int = 100, clock: Callable[[], float] = time.monotonic) -> None:
        self._qps = qps
        self._burst = burst
        self._clock = clock
        self._lock = threading.Lock()
        self._tokens = float(burst)
        self._last = clock()

    def when(self, item: Hashable) -> float:
        with self._lock:
            now = self._clock()
            self._tokens = min(float(self._burst), self._tokens + (now - self._last) * self._qps)
            self._last = now
            self._tokens -= 1
            if self._tokens >= 0:
                return 0.0
            return -self._tokens / self._qps

    def num_requeues(self, item: Hashable) -> int:
        return 0

    def forget(self, item: Hashable) -> None:
        pass


class MaxOfRateLimiter:
    """Combine limiters by taking the longest delay any of them asks for."""

    def __init__(self, *limiters: RateLimiter) -> None:
        self._limiters = limiters

    def when(self, item: Hashable) -> float:
        return max(limiter.when(item) for limiter in self._limiters)

    def num_requeues(self, item: Hashable) -> int:
        return max(limiter.num_requeues(item) for limiter in self._limiters)

    def forget(self, item: Hashable) -> None:
        for limiter in self._limiters:
            limiter.forget(item)


def default_controller_rate_limiter(
    base_delay: float = 0.005,
    max_delay: float = 1000.0,
    qps: float = 10.0,
    burst: int = 100,
) -> MaxOfRateLimiter:
    """Per-item exponential backoff bounded by an overall token bucket."""
    return MaxOfRateLimiter(
        ItemExponentialFailureRateLimiter(base_delay, max_delay),
        BucketRateLimiter(qps, burst),
    )


class RateLimitingQueue(DelayingQueue):
    """:class:`DelayingQueue` whose retries are paced by a :class:`RateLimiter`."""

    def __init__(self, rate_limiter: RateLimiter | None = None, name: str = "") -> None:
        super().__init__(name)
        self._rate_limiter = rate_limiter or default_controller_rate_limiter()

    def add_rate_limited(self, item: Hashable) -> None:
        """Re-add *item* once the rate limiter says it may run again."""
        self.add_after(item, self._rate_limiter.when(item))

    def forget(self, item: Hashable) -> None:
        """Reset the failure history of *item* (call after a successful pass)."""
        self._rate_limiter.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return self._rate_limiter.num_requeues(item)
