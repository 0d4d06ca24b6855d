"""Rate-limited work queue and the worker loop shared by the controllers."""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Hashable
from typing import Protocol

logger = logging.getLogger(__name__)

_WORKER_PERIOD = 1.0


class RateLimiter(Protocol):
    def when(self, item: Hashable) -> float: ...

    def forget(self, item: Hashable) -> None: ...

    def num_requeues(self, item: Hashable) -> int: ...


class ItemFastSlowRateLimiter:
    """Retries quickly for a number of attempts, then slowly."""

    def __init__(self, fast_delay: float, slow_delay: float, max_fast_attempts: int):
        self.fast_delay = fast_delay
        self.slow_delay = slow_delay
        self.max_fast_attempts = max_fast_attempts
        self._failures: dict[Hashable, int] = {}
        self._lock = threading.Lock()

    def when(self, item: Hashable) -> float:
        with self._lock:
            count = self._failures.get(item, 0) + 1
            self._failures[item] = count
            return self.fast_delay if count <= self.max_fast_attempts else self.slow_delay

    def forget(self, item: Hashable) -> None:
        with self._lock:
            self._failures.pop(item, None)

    def num_requeues(self, item: Hashable) -> int:
        with self._lock:
            return self._failures.get(item, 0)


class ItemExponentialFailureRateLimiter:
    """Doubles the delay on each failure of an item, up to a maximum."""

    def __init__(self, base_delay: float, max_delay: float):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._failures: dict[Hashable, int] = {}
        self._lock = threading.Lock()

    def when(self, item: Hashable) -> float:
        with self._lock:
            exponent = self._failures.get(item, 0)
            self._failures[item] = exponent + 1
            if exponent >= 1024:
                return self.max_delay
            return min(self.base_delay * 2.0**exponent, self.max_delay)

    def forget(self, item: Hashable) -> None:
        with self._lock:
            self._failures.pop(item, None)

    def num_requeues(self, item: Hashable) -> int:
        with self._lock:
            return self._failures.get(item, 0)


class _TokenBucket:
    """Token bucket shared by all items; it keeps no state per item."""

    def __init__(self, qps: float, burst: int):
        self._rate = qps
        self._burst = float(burst)
        self._tokens = float(burst)
        self._last = time.monotonic()
        self._lock = threading.Lock()

    def delay(self) -> float:
        """Take a token and return how long to wait for it, in seconds."""
        with self._lock:
            now = time.monotonic()
            self._tokens = min(self._burst, self._tokens + (now - self._last) * self._rate)
            self._last = now
            self._tokens -= 1
            return 0.0 if self._tokens >= 0 else -self._tokens / self._rate


class _BucketedItemRateLimiter:
    """Uses the longer of a per-item limiter's delay and a shared bucket's."""

    def __init__(self, item_limiter: RateLimiter, bucket: _TokenBucket):
        self._item_limiter = item_limiter
        self._bucket = bucket

    def when(self, item: Hashable) -> float:
        return max(self._item_limiter.when(item), self._bucket.delay())

    def forget(self, item: Hashable) -> None:
        self._item_limiter.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return self._item_limiter.num_requeues(item)


def default_controller_rate_limiter() -> RateLimiter:
    """Per-item exponential backoff combined with an overall token bucket."""
    return _BucketedItemRateLimiter(
        ItemExponentialFailureRateLimiter(0.005, 1000.0),
        _TokenBucket(10.0, 100),
    )


class ShutDownError(Exception):
    """Raised by a queue that is shut down and drained."""


class RateLimitingQueue:
    """A de-duplicating work queue with delayed and rate-limited adds.

    An item is never handed to two workers at once: an item added while
    it is being processed is queued again only once it is marked done.
    """

    def __init__(self, rate_limiter: RateLimiter, name: str = ""):
        self.name = name
        self._limiter = rate_limiter
        self._lock = threading.Lock()
        self._ready = threading.Condition(self._lock)
        self._delayed = threading.Condition(self._lock)
        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._waiting: dict[Hashable, float] = {}
        self._heap: list[tuple[float, int, Hashable]] = []
        self._sequence = itertools.count()
        self._shutting_down = False
        self._delay_thread = threading.Thread(
            target=self._wait_loop, name=f"{name or 'queue'}-delay", daemon=True
        )
        self._delay_thread.start()

    @property
    def shutting_down(self) -> bool:
        with self._lock:
            return self._shutting_down

    def _add_locked(self, item: Hashable) -> None:
        if self._shutting_down or item in self._dirty:
            return
        self._dirty.add(item)
        if item in self._processing:
            return
        self._queue.append(item)
        self._ready.notify()

    def _wait_loop(self) -> None:
        with self._lock:
            while not self._shutting_down:
                now = time.monotonic()
                while self._heap and self._heap[0][0] <= now:
                    ready_at, _, item = heapq.heappop(self._heap)
                    if self._waiting.get(item) == ready_at:
                        del self._waiting[item]
                        self._add_locked(item)
                timeout = self._heap[0][0] - now if self._heap else None
                self._delayed.wait(timeout)

    def add(self, item: Hashable) -> None:
        with self._lock:
            self._add_locked(item)

    def add_after(self, item: Hashable, delay: float) -> None:
        """Add the item once the delay, in seconds, has passed."""
        with self._lock:
            if self._shutting_down:
                return
            if delay <= 0:
                self._add_locked(item)
                return
            ready_at = time.monotonic() + delay
            existing = self._waiting.get(item)
            if existing is not None and existing <= ready_at:
                return
            self._waiting[item] = ready_at
            heapq.heappush(self._heap, (ready_at, next(self._sequence), item))
            self._delayed.notify()

    def add_rate_limited(self, item: Hashable) -> None:
        self.add_after(item, self._limiter.when(item))

    def get(self, timeout: float | None = None) -> Hashable:
        """Block until an item is available and return it.

        Raises TimeoutError when the timeout passes first and ShutDownError
        when the queue is shut down and empty.
        """
        with self._lock:
            if not self._ready.wait_for(
                lambda: bool(self._queue) or self._shutting_down, timeout
            ):
                raise TimeoutError(f"no item in queue {self.name!r} within {timeout}s")
            if not self._queue:
                raise ShutDownError(f"queue {self.name!r} is shut down")
            item = self._queue.popleft()
            self._processing.add(item)
            self._dirty.discard(item)
            return item

    def done(self, item: Hashable) -> None:
        with self._lock:
            self._processing.discard(item)
            if item in self._dirty:
                self._queue.append(item)
                self._ready.notify()

    def forget(self, item: Hashable) -> None:
        self._limiter.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return self._limiter.num_requeues(item)

    def shut_down(self) -> None:
        with self._lock:
            self._shutting_down = True
            self._ready.notify_all()
            self._delayed.notify_all()

    def __len__(self) -> int:
        with self._lock:
            return len(self._queue)


class QueueController(ABC):
    """Drains a work queue of 'namespace/name' keys through sync_handler."""

    def __init__(self, workqueue: RateLimitingQueue):
        self.workqueue = workqueue

    @abstractmethod
    def sync_handler(self, key: str) -> None:
        """Converge the object named by key towards its desired state."""

    def process_next_work_item(self) -> bool:
        """Handle one item; return False once the queue is shut down."""
        try:
            item = self.workqueue.get()
        except ShutDownError:
            return False
        try:
            if not isinstance(item, str):
                self.workqueue.forget(item)
                logger.error("expected string in workqueue but got %r", item)
                return True
            try:
                self.sync_handler(item)
            except Exception as exc:  # noqa: BLE001 - any failure is retried
                self.workqueue.add_rate_limited(item)
                logger.error("error syncing '%s': %s, requeuing", item, exc)
                return True
            self.workqueue.forget(item)
            logger.info("Successfully synced '%s'", item)
            return True
        finally:
            self.workqueue.done(item)

    def run_worker(self) -> None:
        while self.process_next_work_item():
            pass

    def _work_until(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            self.run_worker()
            if stop_event.wait(_WORKER_PERIOD):
                return

    def start_workers(
        self, threadiness: int, stop_event: threading.Event
    ) -> list[threading.Thread]:
        """Start worker threads that run until stop_event is set."""
        threads = []
        for index in range(threadiness):
            thread = threading.Thread(
                target=self._work_until,
                args=(stop_event,),
                name=f"{self.workqueue.name or 'worker'}-{index}",
                daemon=True,
            )
            thread.start()
            threads.append(thread)
        return threads