from __future__ import annotations

import heapq
import itertools
import random
import threading
import time
from collections import deque
from collections.abc import Callable, Hashable
from typing import Protocol

from ekpose.src.metrics import METRICS


class RateLimiter(Protocol):
    def when(self, item: Hashable) -> float: ...

    def forget(self, item: Hashable) -> None: ...

    def num_requeues(self, item: Hashable) -> int: ...


class ItemExponentialFailureRateLimiter:
    """Per-key exponential backoff: ``base_delay * 2**failures``, capped at ``max_delay``.

    ``jitter`` adds up to ``jitter * step`` seconds on top of each step.  With
    ``jitter < 1`` a jittered step is always shorter than the next un-jittered
    step, so the delays handed out for one key never decrease.
    """

    def __init__(
        self,
        base_delay: float = 0.005,
        max_delay: float = 1000.0,
        jitter: float = 0.0,
        random_fn: Callable[[], float] = random.random,
    ) -> None:
        if base_delay <= 0:
            raise ValueError("base_delay must be > 0")
        if max_delay < base_delay:
            raise ValueError("max_delay must be >= base_delay")
        if not 0.0 <= jitter < 1.0:
            raise ValueError("jitter must be in [0, 1)")
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self.random_fn = random_fn
        self._failures: dict[Hashable, int] = {}
        self._lock = threading.Lock()

    def when(self, item: Hashable) -> float:
        with self._lock:
            exponent = self._failures.get(item, 0)
            self._failures[item] = exponent + 1

        # Past ~2**64 the float multiply overflows; the cap has long been hit.
        if exponent > 64:
            return self.max_delay
        step = self.base_delay * (2**exponent)
        if step >= self.max_delay:
            return self.max_delay
        delay = step + step * self.jitter * self.random_fn()
        return min(delay, self.max_delay)

    def forget(self, item: Hashable) -> None:
        with self._lock:
            self._failures.pop(item, None)

    def num_requeues(self, item: Hashable) -> int:
        with self._lock:
            return self._failures.get(item, 0)


class BucketRateLimiter:
    """Overall token bucket shared by every key; caps the aggregate retry rate."""

    def __init__(
        self,
        qps: float = 10.0,
        burst: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if qps <= 0:
            raise ValueError("qps must be > 0")
        if burst < 1:
            raise ValueError("burst must be >= 1")
        self.qps = qps
        self.burst = burst
        self.clock = clock
        self._tokens = float(burst)
        self._last = clock()
        self._lock = threading.Lock()

    def when(self, item: Hashable) -> float:
        with self._lock:
            now = self.clock()
            elapsed = max(0.0, now - self._last)
            self._tokens = min(float(self.burst), self._tokens + elapsed * self.qps)
            self._last = now
            # Reserve a token even when the bucket is empty; the deficit is the wait.
            self._tokens -= 1.0
            if self._tokens >= 0:
                return 0.0
            return -self._tokens / self.qps

    def forget(self, item: Hashable) -> None:
        return None

    def num_requeues(self, item: Hashable) -> int:
        return 0


class MaxOfRateLimiter:
    """Combine limiters by returning the longest delay any of them asks for."""

    def __init__(self, *limiters: RateLimiter) -> None:
        if not limiters:
            raise ValueError("at least one rate limiter is required")
        self.limiters = limiters

    def when(self, item: Hashable) -> float:
        return max(limiter.when(item) for limiter in self.limiters)

    def forget(self, item: Hashable) -> None:
        for limiter in self.limiters:
            limiter.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return max(limiter.num_requeues(item) for limiter in self.limiters)


def default_controller_rate_limiter(
    base_delay: float = 0.005,
    max_delay: float = 1000.0,
    qps: float = 10.0,
    burst: int = 100,
    jitter: float = 0.5,
) -> MaxOfRateLimiter:
    """Per-key exponential backoff combined with an overall 10 qps / 100 burst bucket."""
    return MaxOfRateLimiter(
        ItemExponentialFailureRateLimiter(base_delay=base_delay, max_delay=max_delay, jitter=jitter),
        BucketRateLimiter(qps=qps, burst=burst),
    )


class RateLimitingQueue:
    """Deduplicating, delaying, rate-limited work queue of hashable keys.

    Internal state, all guarded by one condition variable:
        ``_queue``
            Keys ready to be handed out, in submission order.
        ``_dirty``
            Keys that need processing.  A key stays dirty while queued, and
            becomes dirty again if resubmitted while a worker holds it.
        ``_processing``
            Keys currently held by a worker.  ``next()`` never hands out a key
            in this set, which is what serializes work per key.
        ``_waiting`` / ``_waiting_due``
            Heap and index of delayed submissions.  Only the earliest due time
            per key is kept; superseded heap entries are skipped lazily.
    """

    def __init__(self, rate_limiter: RateLimiter | None = None) -> None:
        self.rate_limiter = rate_limiter or default_controller_rate_limiter()
        self._cond = threading.Condition()
        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._waiting: list[tuple[float, int, Hashable]] = []
        self._waiting_due: dict[Hashable, float] = {}
        self._sequence = itertools.count()
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def _update_depth(self) -> None:
        METRICS.queue_depth.set(len(self._queue))

    def _add_locked(self, key: Hashable) -> None:
        if self._shutting_down:
            return
        if key in self._dirty:
            return
        METRICS.queue_adds_total.inc()
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._update_depth()
        self._cond.notify()

    def submit(self, key: Hashable) -> None:
        """Mark *key* as needing work; a no-op when it is already queued.

        When the key is currently being processed it is queued again as soon
        as the holder calls :meth:`done`.
        """
        with self._cond:
            self._add_locked(key)

    def submit_after(self, key: Hashable, delay: float) -> None:
        """Submit *key* once *delay* seconds have passed."""
        with self._cond:
            if self._shutting_down:
                return
            if delay <= 0:
                self._add_locked(key)
                return

            due_at = time.monotonic() + delay
            existing_due = self._waiting_due.get(key)
            if existing_due is not None and existing_due <= due_at:
                return
            self._waiting_due[key] = due_at
            heapq.heappush(self._waiting, (due_at, next(self._sequence), key))
            # Blocked next() calls recompute how long to sleep.
            self._cond.notify_all()

    def _promote_due_locked(self) -> float | None:
        """Move delayed keys that are due into the queue.

        Returns the seconds until the next delayed key is due, or ``None``
        when nothing is waiting.
        """
        now = time.monotonic()
        while self._waiting:
            due_at, _, key = self._waiting[0]
            if self._waiting_due.get(key) != due_at:
                heapq.heappop(self._waiting)
                continue
            if due_at > now:
                return due_at - now
            heapq.heappop(self._waiting)
            del self._waiting_due[key]
            self._add_locked(key)
        return None

    def next(self) -> tuple[Hashable | None, bool]:
        """Block until a key is available; return ``(key, True)`` or ``(None, False)`` on shutdown."""
        with self._cond:
            while True:
                wait_seconds = self._promote_due_locked()
                if self._queue:
                    break
                if self._shutting_down:
                    return None, False
                self._cond.wait(timeout=wait_seconds)

            key = self._queue.popleft()
            self._processing.add(key)
            self._dirty.discard(key)
            self._update_depth()
            return key, True

    def done(self, key: Hashable) -> None:
        """Release *key*; re-queue it if it was resubmitted while held."""
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._update_depth()
                self._cond.notify()

    def requeue_after_failure(self, key: Hashable) -> float:
        """Resubmit *key* after the rate limiter's backoff delay; return that delay."""
        delay = self.rate_limiter.when(key)
        METRICS.queue_retries_total.inc()
        self.submit_after(key, delay)
        return delay

    def forget(self, key: Hashable) -> None:
        """Reset the backoff history for *key*; in-flight state is untouched."""
        self.rate_limiter.forget(key)

    def num_requeues(self, key: Hashable) -> int:
        return self.rate_limiter.num_requeues(key)

    def shut_down(self, drain: bool = True) -> None:
        """Stop accepting keys and wake every blocked :meth:`next` call.

        With ``drain=True`` keys already queued are still handed out before
        ``next()`` reports shutdown; with ``drain=False`` they are discarded.
        Delayed submissions are always discarded.
        """
        with self._cond:
            self._shutting_down = True
            self._waiting.clear()
            self._waiting_due.clear()
            if not drain:
                self._queue.clear()
                self._dirty.clear()
            self._update_depth()
            self._cond.notify_all()
