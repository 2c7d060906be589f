"""Resource management - queues and rate limits.

This module bounds the demand the kernel accepts:
- BoundedQueue: per-owner backlog with capacity and age limits
- RateLimiter: per-connection sliding window request limits
"""

from ipc_control_tower.resources.queue import BoundedQueue
from ipc_control_tower.resources.rate_limiter import (
    RateLimitConfig,
    RateLimiter,
    RateLimitResult,
    SlidingWindow,
)

__all__ = [
    "BoundedQueue",
    "RateLimitConfig",
    "RateLimiter",
    "RateLimitResult",
    "SlidingWindow",
]
