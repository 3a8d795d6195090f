"""
Deduplicating, rate-limited work queue for pod keys.

Semantics follow the controller work queue most Kubernetes controllers use:
  • an item added while already pending collapses into the pending entry;
  • an item added while a worker holds it is re-queued once that worker calls
    done(), so two workers never process the same key concurrently;
  • failed items come back through add_rate_limited() after a per-item
    exponential delay, bounded overall by a token bucket.
"""

import heapq
import threading
import time
from collections import deque
from typing import Dict, Hashable, Optional, Tuple


# ────────────  Rate limiters  ────────────
class ItemExponentialFailureRateLimiter:
    """base * 2**failures per item, capped at max_delay."""

    def __init__(self, base_delay: float = 0.005, max_delay: float = 1000.0):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._failures: Dict[Hashable, int] = {}
        self._lock = threading.Lock()

    def when(self, item) -> float:
        with self._lock:
            exp = self._failures.get(item, 0)
            self._failures[item] = exp + 1
        try:
            delay = self.base_delay * (2 ** exp)
        except OverflowError:
            return self.max_delay
        return min(delay, self.max_delay)

    def num_requeues(self, item) -> int:
        with self._lock:
            return self._failures.get(item, 0)

    def forget(self, item):
        with self._lock:
            self._failures.pop(item, None)


class BucketRateLimiter:
    """Overall token bucket: qps tokens per second, at most burst stored."""

    def __init__(self, qps: float = 10.0, burst: int = 100, clock=time.monotonic):
        self.qps = qps
        self.burst = burst
        self._clock = clock
        self._tokens = float(burst)
        self._last = clock()
        self._lock = threading.Lock()

    def when(self, item) -> float:
        with self._lock:
            now = self._clock()
            self._tokens = min(self.burst, self._tokens + (now - self._last) * self.qps)
            self._last = now
            self._tokens -= 1
            if self._tokens >= 0:
                return 0.0
            return -self._tokens / self.qps

    def num_requeues(self, item) -> int:
        return 0

    def forget(self, item):
        pass


class MaxOfRateLimiter:
    def __init__(self, *limiters):
        self.limiters = limiters

    def when(self, item) -> float:
        return max(limiter.when(item) for limiter in self.limiters)

    def num_requeues(self, item) -> int:
        return max(limiter.num_requeues(item) for limiter in self.limiters)

    def forget(self, item):
        for limiter in self.limiters:
            limiter.forget(item)


def default_controller_rate_limiter() -> MaxOfRateLimiter:
    return MaxOfRateLimiter(
        ItemExponentialFailureRateLimiter(0.005, 1000.0),
        BucketRateLimiter(qps=10.0, burst=100),
    )


# ────────────  Queue  ────────────
class RateLimitingQueue:
    def __init__(self, rate_limiter=None, name: str = "pods"):
        self.name = name
        self.rate_limiter = rate_limiter or default_controller_rate_limiter()
        self._cond = threading.Condition()
        self._queue: deque = deque()
        self._dirty: set = set()
        self._processing: set = set()
        self._shutting_down = False

        # delayed adds: heap of (ready_at, seq, item); earliest ready_at per item
        self._waiting: list = []
        self._waiting_at: Dict[Hashable, float] = {}
        self._seq = 0
        self._delay_cond = threading.Condition()
        self._delay_thread = threading.Thread(target=self._delay_loop,
                                              name=f"workqueue-{name}-delay",
                                              daemon=True)
        self._delay_thread.start()

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def add(self, item):
        with self._cond:
            if self._shutting_down or item in self._dirty:
                return
            self._dirty.add(item)
            if item in self._processing:
                return
            self._queue.append(item)
            self._cond.notify()

    def get(self) -> Tuple[Optional[Hashable], bool]:
        with self._cond:
            while not self._queue and not self._shutting_down:
                self._cond.wait()
            if not self._queue:
                return None, True
            item = self._queue.popleft()
            self._processing.add(item)
            self._dirty.discard(item)
            return item, False

    def done(self, item):
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty:
                self._queue.append(item)
                self._cond.notify()

    def shut_down(self):
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()
        with self._delay_cond:
            self._delay_cond.notify_all()

    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    # ───────  delaying  ───────
    def add_after(self, item, delay: float):
        if self.shutting_down():
            return
        if delay <= 0:
            self.add(item)
            return
        ready_at = time.monotonic() + delay
        with self._delay_cond:
            current = self._waiting_at.get(item)
            if current is not None and current <= ready_at:
                return
            self._waiting_at[item] = ready_at
            self._seq += 1
            heapq.heappush(self._waiting, (ready_at, self._seq, item))
            self._delay_cond.notify()

    def _delay_loop(self):
        while True:
            ready = []
            with self._delay_cond:
                if self._shutting_down:
                    return
                now = time.monotonic()
                while self._waiting and self._waiting[0][0] <= now:
                    ready_at, _, item = heapq.heappop(self._waiting)
                    # stale heap entry superseded by an earlier add_after
                    if self._waiting_at.get(item) == ready_at:
                        del self._waiting_at[item]
                        ready.append(item)
                if not ready:
                    timeout = self._waiting[0][0] - now if self._waiting else None
                    self._delay_cond.wait(timeout)
            for item in ready:
                self.add(item)

    # ───────  rate limiting  ───────
    def add_rate_limited(self, item):
        self.add_after(item, self.rate_limiter.when(item))

    def forget(self, item):
        self.rate_limiter.forget(item)

    def num_requeues(self, item) -> int:
        return self.rate_limiter.num_requeues(item)
