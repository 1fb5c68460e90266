from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from collections.abc import Callable

from logshipper.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


class ExponentialBackoffRateLimiter:
    """Per-key exponential backoff: ``base_delay * 2**failures``, capped at ``max_delay``.

    The failure counter for a key grows on every :meth:`when` call and is
    cleared by :meth:`forget`.
    """

    def __init__(self, base_delay: float = 0.005, max_delay: float = 1000.0) -> None:
        if base_delay <= 0:
            raise ValueError("base_delay must be > 0")
        if max_delay < base_delay:
            raise ValueError("max_delay must be >= base_delay")
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._failures: dict[str, int] = {}
        self._lock = threading.Lock()

    def when(self, key: str) -> float:
        with self._lock:
            failures = self._failures.get(key, 0)
            self._failures[key] = failures + 1
        # 2**64 * base_delay exceeds any sane cap; avoid float overflow.
        if failures >= 64:
            return self.max_delay
        return min(self.max_delay, self.base_delay * (2**failures))

    def num_requeues(self, key: str) -> int:
        with self._lock:
            return self._failures.get(key, 0)

    def forget(self, key: str) -> None:
        with self._lock:
            self._failures.pop(key, None)


class RateLimitingQueue:
    """Deduplicating FIFO of resource keys with an in-flight set and delayed re-adds.

    A key lives in at most one of three places at any instant:

    ``_queue``
        Pending and waiting for a worker. ``_dirty`` mirrors it so duplicate
        adds collapse into one entry.
    ``_processing``
        Handed out by :meth:`get` and not yet :meth:`done`. An :meth:`add`
        for an in-flight key only marks it dirty; :meth:`done` then puts it
        back on the queue, so no two workers ever hold the same key.
    ``_waiting``
        A min-heap of ``(due_at, seq, key)`` drained by a single background
        thread into the queue once ``due_at`` passes. Only the earliest due
        time per key is honoured.

    After :meth:`shut_down` new adds are ignored, but :meth:`get` keeps handing
    out keys that were already pending and returns ``(None, True)`` only once
    the queue is empty. In-flight keys may still be marked :meth:`done`.
    """

    def __init__(
        self,
        rate_limiter: ExponentialBackoffRateLimiter | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.rate_limiter = rate_limiter or ExponentialBackoffRateLimiter()
        self._clock = clock

        self._queue: deque[str] = deque()
        self._dirty: set[str] = set()
        self._processing: set[str] = set()
        self._shutting_down = False

        self._waiting: list[tuple[float, int, str]] = []
        self._waiting_due: dict[str, float] = {}
        self._seq = itertools.count()
        self._waiting_thread: threading.Thread | None = None

        self._lock = threading.Lock()
        self._cond = threading.Condition(self._lock)
        self._waiting_cond = threading.Condition(self._lock)

    def _add_locked(self, key: str) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        METRICS.queue_depth.set(len(self._queue))
        self._cond.notify()

    def add(self, key: str) -> None:
        with self._lock:
            self._add_locked(key)

    def get(self) -> tuple[str | None, bool]:
        """Block until a key is available; returns ``(key, shutting_down)``."""
        with self._lock:
            while not self._queue and not self._shutting_down:
                self._cond.wait()
            if not self._queue:
                return None, True
            key = self._queue.popleft()
            self._processing.add(key)
            self._dirty.discard(key)
            METRICS.queue_depth.set(len(self._queue))
            return key, False

    def done(self, key: str) -> None:
        with self._lock:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                METRICS.queue_depth.set(len(self._queue))
                self._cond.notify()
            elif not self._processing:
                self._cond.notify_all()

    def add_after(self, key: str, delay: float) -> None:
        if delay <= 0:
            self.add(key)
            return
        with self._lock:
            if self._shutting_down:
                return
            due_at = self._clock() + delay
            current = self._waiting_due.get(key)
            if current is not None and current <= due_at:
                return
            self._waiting_due[key] = due_at
            heapq.heappush(self._waiting, (due_at, next(self._seq), key))
            if self._waiting_thread is None:
                self._waiting_thread = threading.Thread(
                    target=self._waiting_loop, name="workqueue-delay", daemon=True
                )
                self._waiting_thread.start()
            self._waiting_cond.notify()

    def _waiting_loop(self) -> None:
        with self._lock:
            while not self._shutting_down:
                if not self._waiting:
                    self._waiting_cond.wait()
                    continue
                due_at, _, key = self._waiting[0]
                if self._waiting_due.get(key) != due_at:
                    # superseded by an earlier due time
                    heapq.heappop(self._waiting)
                    continue
                remaining = due_at - self._clock()
                if remaining > 0:
                    self._waiting_cond.wait(timeout=remaining)
                    continue
                heapq.heappop(self._waiting)
                del self._waiting_due[key]
                self._add_locked(key)

    def add_rate_limited(self, key: str) -> None:
        self.add_after(key, self.rate_limiter.when(key))

    def num_requeues(self, key: str) -> int:
        return self.rate_limiter.num_requeues(key)

    def forget(self, key: str) -> None:
        self.rate_limiter.forget(key)

    def shut_down(self) -> None:
        with self._lock:
            self._shutting_down = True
            self._cond.notify_all()
            self._waiting_cond.notify_all()

    def shut_down_with_drain(self, timeout: float | None = None) -> bool:
        """Shut down and wait until every in-flight key was marked done."""
        self.shut_down()
        with self._lock:
            drained = self._cond.wait_for(lambda: not self._processing, timeout=timeout)
            in_flight = len(self._processing)
        if not drained:
            LOGGER.warning("Work queue shut down with %d key(s) still in flight", in_flight)
        return drained

    @property
    def shutting_down(self) -> bool:
        with self._lock:
            return self._shutting_down

    def __len__(self) -> int:
        with self._lock:
            return len(self._queue)
