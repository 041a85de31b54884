from .rate_limit import TokenBucketLimiter
from .retry import (
    ResilientCaller,
    RetryPolicy,
    compute_backoff_delay,
    default_should_retry,
    with_retry,
)

__all__ = [
    "ResilientCaller",
    "RetryPolicy",
    "TokenBucketLimiter",
    "compute_backoff_delay",
    "default_should_retry",
    "with_retry",
]
