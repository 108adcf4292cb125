"""
Rate limiters decide how long a key must wait before it is processed again.
Per-key limiters track failures so that a misbehaving key backs off without
slowing down healthy keys, and the bucket limiter bounds the overall rate.
"""

# Standard
from typing import Dict, Hashable
import abc
import threading
import time

# First Party
import alog

# Local
from .. import config
from ..utils import parse_seconds

log = alog.use_channel("RTLMT")


class RateLimiterBase(abc.ABC):
    """Interface shared by all rate limiters"""

    @abc.abstractmethod
    def when(self, item: Hashable) -> float:
        """Record a retry of item and get the seconds it must wait"""

    @abc.abstractmethod
    def forget(self, item: Hashable):
        """Stop tracking item. Its next retry starts from the base delay"""

    @abc.abstractmethod
    def num_requeues(self, item: Hashable) -> int:
        """The number of retries recorded for item since it was last forgotten"""


class ItemExponentialFailureRateLimiter(RateLimiterBase):
    """Per-key exponential backoff: base_delay * 2^failures, capped at
    max_delay
    """

    def __init__(self, base_delay: float, max_delay: float):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._failures: Dict[Hashable, int] = {}
        self._lock = threading.Lock()

    def when(self, item: Hashable) -> float:
        with self._lock:
            exponent = self._failures.get(item, 0)
            self._failures[item] = exponent + 1

        # Avoid building huge floats for keys that have failed many times
        if exponent > 62:
            return self.max_delay
        backoff = self.base_delay * 2**exponent
        log.debug4("Backoff for %s after %d failures: %fs", item, exponent, backoff)
        return min(backoff, self.max_delay)

    def forget(self, item: Hashable):
        with self._lock:
            self._failures.pop(item, None)

    def num_requeues(self, item: Hashable) -> int:
        with self._lock:
            return self._failures.get(item, 0)


class BucketRateLimiter(RateLimiterBase):
    """Overall token bucket which refills at qps tokens per second up to burst
    tokens. Each call to when reserves one token. A qps of zero disables the
    limit.
    """

    def __init__(self, qps: float, burst: int):
        self.qps = qps
        self.burst = burst
        self._tokens = float(burst)
        self._last = time.monotonic()
        self._lock = threading.Lock()

    def when(self, item: Hashable) -> float:
        if self.qps <= 0:
            return 0.0
        with self._lock:
            now = time.monotonic()
            self._tokens = min(
                float(self.burst), self._tokens + (now - self._last) * self.qps
            )
            self._last = now
            self._tokens -= 1
            if self._tokens >= 0:
                return 0.0
            return -self._tokens / self.qps

    def forget(self, item: Hashable):
        """Tokens are not tracked per key"""

    def num_requeues(self, item: Hashable) -> int:
        return 0


class MaxOfRateLimiter(RateLimiterBase):
    """Combine limiters by waiting for the slowest of them"""

    def __init__(self, *limiters: RateLimiterBase):
        self.limiters = limiters

    def when(self, item: Hashable) -> float:
        return max([limiter.when(item) for limiter in self.limiters] or [0.0])

    def forget(self, item: Hashable):
        for limiter in self.limiters:
            limiter.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return max([limiter.num_requeues(item) for limiter in self.limiters] or [0])


def default_rate_limiter() -> RateLimiterBase:
    """Build the configured combination of per-key backoff and overall bucket"""
    return MaxOfRateLimiter(
        ItemExponentialFailureRateLimiter(
            base_delay=parse_seconds(config.workqueue.base_delay),
            max_delay=parse_seconds(config.workqueue.max_delay),
        ),
        BucketRateLimiter(qps=config.workqueue.qps, burst=config.workqueue.burst),
    )
