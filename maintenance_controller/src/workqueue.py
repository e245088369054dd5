from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from collections.abc import Callable, Hashable

from maintenance_controller.src.metrics import METRICS
from maintenance_controller.src.ratelimit import RateLimiter, default_controller_rate_limiter

LOGGER = logging.getLogger(__name__)


class WorkQueue:
    """De-duplicating FIFO with single-flight processing per item.

    Three pieces of state are guarded by one condition variable:

    ``_queue``
        Items waiting to be handed out, in insertion order.
    ``_dirty``
        Items that need processing.  An item is added to the FIFO only when
        it enters this set, which is what collapses duplicate adds.
    ``_processing``
        Items handed out by :meth:`get` and not yet passed to :meth:`done`.
        Adding such an item only marks it dirty; :meth:`done` re-queues it.
        This keeps two workers from ever holding the same item at once.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def _record_depth(self) -> None:
        METRICS.queue_depth.set(len(self._queue))

    def add(self, item: Hashable) -> None:
        with self._cond:
            if self._shutting_down:
                return
            if item in self._dirty:
                return
            self._dirty.add(item)
            if item in self._processing:
                return
            self._queue.append(item)
            self._record_depth()
            self._cond.notify()

    def get(self, timeout: float | None = None) -> tuple[Hashable | None, bool]:
        """Block until an item is available.

        Returns ``(item, False)`` for work, ``(None, True)`` once the queue is
        shut down and drained, and ``(None, False)`` when *timeout* elapses.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while not self._queue and not self._shutting_down:
                if deadline is None:
                    self._cond.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None, False
                self._cond.wait(remaining)

            if not self._queue:
                return None, True

            item = self._queue.popleft()
            self._processing.add(item)
            self._dirty.discard(item)
            self._record_depth()
            return item, False

    def done(self, item: Hashable) -> None:
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty:
                self._queue.append(item)
                self._record_depth()
                self._cond.notify()

    def shutdown(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def is_processing(self, item: Hashable) -> bool:
        with self._cond:
            return item in self._processing


class RateLimitingQueue(WorkQueue):
    """:class:`WorkQueue` with delayed and rate-limited re-adds.

    Delayed items sit in a min-heap ordered by due time and are moved into
    the FIFO by a single daemon thread.  When the same item is delayed twice
    only the earlier due time is kept.
    """

    def __init__(
        self,
        rate_limiter: RateLimiter | None = None,
        clock: Callable[[], float] = time.monotonic,
        name: str = "maintenance",
    ) -> None:
        super().__init__()
        self.rate_limiter = rate_limiter or default_controller_rate_limiter()
        self._clock = clock
        self._waiting_cond = threading.Condition()
        self._waiting: list[tuple[float, int, Hashable]] = []
        self._waiting_due: dict[Hashable, float] = {}
        self._sequence = itertools.count()
        self._waiting_stopped = False
        self._waiting_thread = threading.Thread(
            target=self._waiting_loop, name=f"{name}-delay", daemon=True
        )
        self._waiting_thread.start()

    def add_after(self, item: Hashable, delay_seconds: float) -> None:
        if self.shutting_down():
            return
        if delay_seconds <= 0:
            self.add(item)
            return

        due_at = self._clock() + delay_seconds
        with self._waiting_cond:
            existing = self._waiting_due.get(item)
            if existing is not None and existing <= due_at:
                return
            self._waiting_due[item] = due_at
            heapq.heappush(self._waiting, (due_at, next(self._sequence), item))
            self._waiting_cond.notify()

    def add_rate_limited(self, item: Hashable) -> float:
        """Re-add *item* after the limiter's backoff; returns the chosen delay."""
        delay = self.rate_limiter.when(item)
        self.add_after(item, delay)
        return delay

    def forget(self, item: Hashable) -> None:
        self.rate_limiter.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return self.rate_limiter.num_requeues(item)

    def pending_delayed(self) -> int:
        with self._waiting_cond:
            return len(self._waiting_due)

    def shutdown(self) -> None:
        super().shutdown()
        with self._waiting_cond:
            self._waiting_stopped = True
            self._waiting.clear()
            self._waiting_due.clear()
            self._waiting_cond.notify_all()

    def _waiting_loop(self) -> None:
        while True:
            ready: list[Hashable] = []
            with self._waiting_cond:
                if self._waiting_stopped:
                    return
                now = self._clock()
                while self._waiting and self._waiting[0][0] <= now:
                    due_at, _, item = heapq.heappop(self._waiting)
                    # Superseded by an earlier due time for the same item.
                    if self._waiting_due.get(item) != due_at:
                        continue
                    del self._waiting_due[item]
                    ready.append(item)
                if not ready:
                    timeout = self._waiting[0][0] - now if self._waiting else None
                    self._waiting_cond.wait(timeout)
                    continue

            for item in ready:
                LOGGER.debug("Delay elapsed for %s; re-queueing", item)
                self.add(item)
