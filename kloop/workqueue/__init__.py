"""
Work queue of keys awaiting reconciliation and the rate limiters that pace it
"""

# Local
from .queue import RateLimitingQueue, WorkQueue
from .rate_limiter import (
    BucketRateLimiter,
    ItemExponentialFailureRateLimiter,
    MaxOfRateLimiter,
    RateLimiterBase,
    default_rate_limiter,
)
