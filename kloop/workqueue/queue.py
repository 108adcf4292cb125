"""
The WorkQueue holds the keys of resources that need a reconcile. It keeps two
sets beside the FIFO:

* dirty: keys that need processing. A key added while it is already dirty is
  coalesced
* processing: keys a worker currently holds. A key added while processing is
  only marked dirty and is put back on the FIFO when the worker calls done

Together these guarantee that a key is never handed to two workers at once.
"""

# Standard
from collections import deque
from typing import Deque, Dict, Hashable, Optional, Set, Tuple
import threading
import time

# First Party
import alog

# Local
from ..threads.timer import TimerEvent, TimerThread
from .rate_limiter import RateLimiterBase, default_rate_limiter

log = alog.use_channel("WQUEUE")


class WorkQueue:
    """Coalescing FIFO of keys with at-most-one concurrent processing per key"""

    def __init__(self, name: str = "workqueue"):
        self.name = name
        self._queue: Deque[Hashable] = deque()
        self._dirty: Set[Hashable] = set()
        self._processing: Set[Hashable] = set()
        self._condition = threading.Condition()
        self._shutting_down = False

    ## Public Interface ########################################################

    def add(self, key: Hashable):
        """Mark a key as needing processing"""
        with self._condition:
            if self._shutting_down:
                log.debug3("[%s] Dropping %s during shutdown", self.name, key)
                return
            if key in self._dirty:
                log.debug4("[%s] Coalescing %s", self.name, key)
                return
            self._dirty.add(key)
            if key in self._processing:
                log.debug4("[%s] %s is processing. Deferring", self.name, key)
                return
            self._queue.append(key)
            self._condition.notify()

    def get(self, timeout: Optional[float] = None) -> Tuple[Optional[Hashable], bool]:
        """Block until a key is available and hand it to the caller. The caller
        must call done(key) when finished.

        Args:
            timeout:  Optional[float]
                Seconds to wait. If None wait forever

        Returns:
            key:  Optional[Hashable]
                The key to process or None on timeout or shutdown
            shutdown:  bool
                True once the queue has been shut down
        """
        end_time = time.monotonic() + timeout if timeout is not None else None
        with self._condition:
            while not self._queue and not self._shutting_down:
                remaining = None
                if end_time is not None:
                    remaining = end_time - time.monotonic()
                    if remaining <= 0:
                        return None, False
                self._condition.wait(remaining)

            if self._shutting_down:
                return None, True

            key = self._queue.popleft()
            self._processing.add(key)
            self._dirty.discard(key)
            return key, False

    def done(self, key: Hashable):
        """Mark processing of a key finished. A key that became dirty while it
        was processing is queued again.
        """
        with self._condition:
            self._processing.discard(key)
            if key in self._dirty and not self._shutting_down:
                self._queue.append(key)
                self._condition.notify()

    def shutdown(self):
        """Stop accepting keys and wake every waiting get"""
        with self._condition:
            log.debug("[%s] Shutting down", self.name)
            self._shutting_down = True
            self._condition.notify_all()

    def shutting_down(self) -> bool:
        with self._condition:
            return self._shutting_down

    def is_processing(self, key: Hashable) -> bool:
        with self._condition:
            return key in self._processing

    def __len__(self):
        with self._condition:
            return len(self._queue)


class RateLimitingQueue(WorkQueue):
    """WorkQueue with delayed and rate limited adds. Delayed adds are driven by
    a TimerThread, and a key waits on at most one timer event: a new delay only
    replaces the pending one if it is due sooner.
    """

    def __init__(
        self,
        rate_limiter: Optional[RateLimiterBase] = None,
        name: str = "workqueue",
        timer_thread: Optional[TimerThread] = None,
    ):
        super().__init__(name=name)
        self.rate_limiter = rate_limiter or default_rate_limiter()
        self.timer_thread = timer_thread or TimerThread(name=f"{name}_timer")
        self._waiting: Dict[Hashable, TimerEvent] = {}
        self._waiting_lock = threading.Lock()
        self.timer_thread.start_thread()

    ## Public Interface ########################################################

    def add_after(self, key: Hashable, delay: float):
        """Add a key once delay seconds have passed"""
        if self.shutting_down():
            return
        if delay <= 0:
            self.add(key)
            return

        due = time.monotonic() + delay
        with self._waiting_lock:
            existing = self._waiting.get(key)
            if existing is not None and not existing.stale:
                if existing.due <= due:
                    log.debug4("[%s] %s already due sooner", self.name, key)
                    return
                existing.cancel()
            event = self.timer_thread.put_event(due, self._add_waiting, key)
            if event is not None:
                self._waiting[key] = event
        log.debug3("[%s] Added %s after %fs", self.name, key, delay)

    def add_rate_limited(self, key: Hashable):
        """Add a key once the rate limiter allows it"""
        self.add_after(key, self.rate_limiter.when(key))

    def forget(self, key: Hashable):
        """Reset the failure history of a key"""
        self.rate_limiter.forget(key)

    def num_requeues(self, key: Hashable) -> int:
        return self.rate_limiter.num_requeues(key)

    def num_waiting(self) -> int:
        """The number of keys with a pending delayed add"""
        with self._waiting_lock:
            return len(self._waiting)

    def shutdown(self):
        """Shut down the queue and the timer driving delayed adds"""
        super().shutdown()
        with self._waiting_lock:
            for event in self._waiting.values():
                event.cancel()
            self._waiting.clear()
        self.timer_thread.stop_thread()

    ## Implementation Details ##################################################

    def _add_waiting(self, key: Hashable):
        with self._waiting_lock:
            self._waiting.pop(key, None)
        self.add(key)
