from __future__ import annotations

import logging
import math
import threading
from collections.abc import Hashable
from dataclasses import dataclass, field

from revision_controller.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


@dataclass
class ExponentialBackoffPolicy:
    """Per-item exponential backoff: ``base_delay * multiplier ** failures``.

    The failure counter grows on every :meth:`when` call and is reset by
    :meth:`forget`.  ``max_delay`` caps the delay; ``None`` leaves it
    unbounded.  Defaults match the client-go controller rate limiter
    (5 ms doubling up to 1000 s).
    """

    base_delay: float = 0.005
    multiplier: float = 2.0
    max_delay: float | None = 1000.0
    _failures: dict[Hashable, int] = field(default_factory=dict, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.base_delay < 0:
            raise ValueError("base_delay must be >= 0")
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1")
        if self.max_delay is not None and self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")

    def when(self, item: Hashable) -> float:
        with self._lock:
            exponent = self._failures.get(item, 0)
            self._failures[item] = exponent + 1
        try:
            delay = self.base_delay * self.multiplier**exponent
        except OverflowError:
            delay = math.inf
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay

    def num_requeues(self, item: Hashable) -> int:
        with self._lock:
            return self._failures.get(item, 0)

    def forget(self, item: Hashable) -> None:
        with self._lock:
            self._failures.pop(item, None)


class RateLimitingQueue:
    """Deduplicating work queue with delayed, backoff-driven re-adds.

    Follows the client-go workqueue contract:

    * an item added while already queued is not queued twice;
    * an item added while being processed is queued again once
      :meth:`done` is called, never handed to two consumers at once;
    * :meth:`get` blocks until an item is available or the queue shuts down.

    Delayed adds run on daemon timers which :meth:`shut_down` cancels.
    """

    def __init__(self, name: str, policy: ExponentialBackoffPolicy | None = None) -> None:
        self.name = name
        self.policy = policy or ExponentialBackoffPolicy()
        self._queue: list[Hashable] = []
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._shutting_down = False
        self._cond = threading.Condition()
        self._timers: set[threading.Timer] = set()

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def add(self, item: Hashable) -> None:
        with self._cond:
            if self._shutting_down or item in self._dirty:
                return
            self._dirty.add(item)
            if item in self._processing:
                return
            self._queue.append(item)
            METRICS.queue_depth.set(len(self._queue))
            self._cond.notify()

    def get(self, timeout: float | None = None) -> tuple[Hashable | None, bool]:
        """Return ``(item, shutdown)``.

        ``shutdown`` is True once :meth:`shut_down` was called; items still
        queued at that point are not handed out.  With a *timeout*,
        ``(None, False)`` is returned if nothing arrived in time.
        """
        with self._cond:
            if not self._queue and not self._shutting_down:
                self._cond.wait_for(lambda: self._queue or self._shutting_down, timeout=timeout)
            if self._shutting_down:
                return None, True
            if not self._queue:
                return None, False
            item = self._queue.pop(0)
            self._processing.add(item)
            self._dirty.discard(item)
            METRICS.queue_depth.set(len(self._queue))
            return item, False

    def done(self, item: Hashable) -> None:
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty:
                self._queue.append(item)
                METRICS.queue_depth.set(len(self._queue))
                self._cond.notify()

    def add_after(self, item: Hashable, delay: float) -> None:
        with self._cond:
            if self._shutting_down:
                return
        if delay <= 0:
            self.add(item)
            return

        timer: threading.Timer

        def _fire() -> None:
            with self._cond:
                self._timers.discard(timer)
            self.add(item)

        timer = threading.Timer(delay, _fire)
        timer.daemon = True
        with self._cond:
            if self._shutting_down:
                return
            self._timers.add(timer)
        timer.start()

    def add_rate_limited(self, item: Hashable) -> None:
        delay = self.policy.when(item)
        METRICS.requeues_total.inc()
        LOGGER.debug("Requeueing %s on %s in %.3fs", item, self.name, delay)
        self.add_after(item, delay)

    def forget(self, item: Hashable) -> None:
        self.policy.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return self.policy.num_requeues(item)

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            timers = list(self._timers)
            self._timers.clear()
            self._cond.notify_all()
        for timer in timers:
            timer.cancel()

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down
