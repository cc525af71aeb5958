from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from collections.abc import Callable, Hashable

from expose_controller.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)

DEFAULT_BASE_DELAY_SECONDS = 0.005
DEFAULT_MAX_DELAY_SECONDS = 1000.0


class ItemExponentialRateLimiter:
    """Per-key exponential backoff: ``base_delay * 2**failures`` capped at ``max_delay``.

    Every call to :meth:`when` counts as one more failure for the key.
    :meth:`forget` resets the key to the base delay.
    """

    def __init__(
        self,
        base_delay: float = DEFAULT_BASE_DELAY_SECONDS,
        max_delay: float = DEFAULT_MAX_DELAY_SECONDS,
    ) -> None:
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
            exponent = self._failures.get(item, 0)
            self._failures[item] = exponent + 1

        # 2**63 overflows any sane ceiling; skip the float math past that.
        if exponent > 62:
            return self.max_delay
        return min(self.base_delay * (2**exponent), self.max_delay)

    def forget(self, item: Hashable) -> None:
        with self._lock:
            self._failures.pop(item, None)

    def num_requeues(self, item: Hashable) -> int:
        with self._lock:
            return self._failures.get(item, 0)


class RateLimitingQueue:
    """Deduplicating work queue with delayed and rate-limited re-adds.

    Bookkeeping:
        ``_queue``
            Keys ready for :meth:`get`, in FIFO order.
        ``_dirty``
            Keys that need processing. A key is in ``_dirty`` at most once,
            which collapses bursts of :meth:`add` into a single pending entry.
        ``_processing``
            Keys handed out by :meth:`get` and not yet passed to :meth:`done`.
            A dirty key that is also processing stays out of ``_queue`` until
            :meth:`done`, so no key is ever handed to two workers at once.
        ``_waiting``
            Heap of ``(ready_at, seq, key)`` for delayed adds; ``_waiting_at``
            holds the live due time per key so superseded heap entries are
            skipped.

    Delayed keys are promoted by whichever :meth:`get` call runs next, and
    blocked getters sleep only until the earliest due time.
    """

    def __init__(
        self,
        rate_limiter: ItemExponentialRateLimiter | None = None,
        name: str = "",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.rate_limiter = rate_limiter or ItemExponentialRateLimiter()
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._waiting: list[tuple[float, int, Hashable]] = []
        self._waiting_at: dict[Hashable, float] = {}
        self._seq = itertools.count()
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def waiting_len(self) -> int:
        """Return how many keys are scheduled for a delayed add."""
        with self._cond:
            return len(self._waiting_at)

    def add(self, item: Hashable) -> None:
        """Mark *item* as needing processing and reset its backoff."""
        self.rate_limiter.forget(item)
        with self._cond:
            self._insert(item)

    def _insert(self, item: Hashable) -> None:
        if self._shutting_down:
            return
        if item in self._dirty:
            return

        METRICS.queue_adds_total.inc()
        self._dirty.add(item)
        if item in self._processing:
            return

        self._queue.append(item)
        METRICS.queue_depth.set(len(self._queue))
        self._cond.notify()

    def add_after(self, item: Hashable, delay: float) -> None:
        """Make *item* visible to :meth:`get` once *delay* seconds have passed.

        If the key is already waiting, the earlier due time wins.
        """
        with self._cond:
            if self._shutting_down:
                return
            if delay <= 0:
                self._insert(item)
                return

            ready_at = self._clock() + delay
            existing = self._waiting_at.get(item)
            if existing is not None and existing <= ready_at:
                return
            self._waiting_at[item] = ready_at
            heapq.heappush(self._waiting, (ready_at, next(self._seq), item))
            # Wake a blocked getter so it recomputes its sleep deadline.
            self._cond.notify()

    def add_rate_limited(self, item: Hashable) -> None:
        delay = self.rate_limiter.when(item)
        METRICS.queue_retries_total.inc()
        LOGGER.debug("Requeueing %s in %.3fs", item, delay)
        self.add_after(item, delay)

    def forget(self, item: Hashable) -> None:
        self.rate_limiter.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return self.rate_limiter.num_requeues(item)

    def _promote_waiting(self) -> None:
        now = self._clock()
        while self._waiting and self._waiting[0][0] <= now:
            ready_at, _, item = heapq.heappop(self._waiting)
            if self._waiting_at.get(item) != ready_at:
                continue
            del self._waiting_at[item]
            self._insert(item)

    def _next_wait_seconds(self) -> float | None:
        if not self._waiting:
            return None
        return max(0.0, self._waiting[0][0] - self._clock())

    def get(self) -> tuple[Hashable | None, bool]:
        """Block until a key is ready; return ``(key, shutdown)``.

        Returns ``(None, True)`` as soon as the queue is shutting down.
        """
        with self._cond:
            while True:
                if self._shutting_down:
                    return None, True
                self._promote_waiting()
                if self._queue:
                    break
                self._cond.wait(timeout=self._next_wait_seconds())

            item = self._queue.popleft()
            METRICS.queue_depth.set(len(self._queue))
            self._processing.add(item)
            self._dirty.discard(item)
            return item, False

    def done(self, item: Hashable) -> None:
        """Release *item*; re-queue it if it was added again while processing."""
        with self._cond:
            if item not in self._processing:
                return
            self._processing.discard(item)
            if item in self._dirty and not self._shutting_down:
                self._queue.append(item)
                METRICS.queue_depth.set(len(self._queue))
                self._cond.notify()

    def shutdown(self) -> None:
        """Reject further adds and release every blocked :meth:`get`."""
        with self._cond:
            if self._shutting_down:
                return
            self._shutting_down = True
            dropped = len(self._queue) + len(self._waiting_at)
            self._queue.clear()
            self._waiting.clear()
            self._waiting_at.clear()
            METRICS.queue_depth.set(0)
            self._cond.notify_all()
        LOGGER.info("Work queue %s shut down (dropped %d pending key(s))", self.name, dropped)
