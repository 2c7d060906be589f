"""Rate Limiter - Sliding window rate limiting.

Implements rate limiting using the sliding window algorithm for accurate
limiting without the boundary issues of fixed windows. Each key (a
connection id) gets its own window.

Usage:
    limiter = RateLimiter(logger, RateLimitConfig(max_requests=100, window_seconds=60))

    result = limiter.check_rate_limit(connection_id)
    if result.exceeded:
        ...  # reply "rate limit exceeded"
"""

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from ipc_protocols import LoggerProtocol


@dataclass(frozen=True)
class RateLimitConfig:
    """Requests allowed per window. ``max_requests <= 0`` disables the limit."""
    max_requests: int = 100
    window_seconds: float = 60.0

    def __post_init__(self) -> None:
        if self.window_seconds <= 0:
            raise ValueError("window_seconds must be positive")


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of a rate limit check."""
    exceeded: bool
    current: int = 0
    limit: int = 0
    remaining: int = 0
    retry_after: float = 0.0

    @classmethod
    def ok(cls, current: int, limit: int) -> "RateLimitResult":
        return cls(
            exceeded=False,
            current=current,
            limit=limit,
            remaining=max(0, limit - current),
        )

    @classmethod
    def exceeded_limit(
        cls,
        current: int,
        limit: int,
        retry_after: float,
    ) -> "RateLimitResult":
        return cls(
            exceeded=True,
            current=current,
            limit=limit,
            remaining=0,
            retry_after=retry_after,
        )


@dataclass
class SlidingWindow:
    """Sliding window counter for rate limiting.

    Uses sub-buckets for accurate sliding window calculation.
    Each bucket represents a fraction of the window period.
    """
    window_seconds: float
    bucket_count: int = 10
    buckets: Dict[int, int] = field(default_factory=dict)

    @property
    def bucket_size(self) -> float:
        return self.window_seconds / self.bucket_count

    def _evict(self, timestamp: float) -> None:
        min_bucket = int(timestamp / self.bucket_size) - self.bucket_count
        for b in [b for b in self.buckets if b <= min_bucket]:
            del self.buckets[b]

    def record(self, timestamp: float) -> int:
        """Record a request and return the current count."""
        self._evict(timestamp)
        current_bucket = int(timestamp / self.bucket_size)
        self.buckets[current_bucket] = self.buckets.get(current_bucket, 0) + 1
        return self.get_count(timestamp)

    def get_count(self, timestamp: float) -> int:
        min_bucket = int(timestamp / self.bucket_size) - self.bucket_count
        return sum(c for b, c in self.buckets.items() if b > min_bucket)

    def time_until_slot_available(self, timestamp: float, limit: int) -> float:
        """Seconds until a request would be allowed (0 if allowed now)."""
        current = self.get_count(timestamp)
        if current < limit:
            return 0.0

        min_bucket = int(timestamp / self.bucket_size) - self.bucket_count
        live = sorted((b, c) for b, c in self.buckets.items() if b > min_bucket)

        # Enough of the oldest buckets must age out
        excess = current - limit + 1
        expired = 0
        for bucket, count in live:
            expired += count
            if expired >= excess:
                expires_at = (bucket + self.bucket_count) * self.bucket_size
                return max(0.0, expires_at - timestamp)

        return float(self.window_seconds)

    def is_idle(self, timestamp: float) -> bool:
        self._evict(timestamp)
        return not self.buckets


class RateLimiter:
    """Rate limiter using the sliding window algorithm.

    Thread-safe. Keys are opaque strings; the session layer uses the
    connection id so one noisy client cannot starve the others.
    """

    def __init__(
        self,
        logger: Optional[LoggerProtocol] = None,
        default_config: Optional[RateLimitConfig] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self._logger = logger.bind(component="rate_limiter") if logger else None
        self._default_config = default_config or RateLimitConfig()
        self._clock = clock or time.monotonic

        self._key_configs: Dict[str, RateLimitConfig] = {}
        self._windows: Dict[str, SlidingWindow] = {}

        self._lock = threading.RLock()

    @property
    def default_config(self) -> RateLimitConfig:
        return self._default_config

    def set_limits(self, key: str, config: RateLimitConfig) -> None:
        """Override the limit for one key."""
        with self._lock:
            self._key_configs[key] = config
            self._windows.pop(key, None)

        if self._logger:
            self._logger.info(
                "rate_limit_configured",
                key=key,
                max_requests=config.max_requests,
                window_seconds=config.window_seconds,
            )

    def get_config(self, key: str) -> RateLimitConfig:
        with self._lock:
            return self._key_configs.get(key, self._default_config)

    def check_rate_limit(self, key: str, record: bool = True) -> RateLimitResult:
        """Check if a request is within the limit.

        Args:
            key: Rate limit key (connection id)
            record: Whether to record this request (False for dry-run check)
        """
        now = self._clock()
        config = self.get_config(key)

        with self._lock:
            if config.max_requests <= 0:
                return RateLimitResult.ok(current=0, limit=0)

            window = self._windows.get(key)
            if window is None:
                window = SlidingWindow(window_seconds=config.window_seconds)
                self._windows[key] = window

            current = window.get_count(now)
            if current >= config.max_requests:
                retry_after = window.time_until_slot_available(now, config.max_requests)
                if self._logger:
                    self._logger.warning(
                        "rate_limit_exceeded",
                        key=key,
                        current=current,
                        limit=config.max_requests,
                        retry_after=retry_after,
                    )
                return RateLimitResult.exceeded_limit(
                    current=current,
                    limit=config.max_requests,
                    retry_after=retry_after,
                )

            if record:
                current = window.record(now)

            return RateLimitResult.ok(current=current, limit=config.max_requests)

    def get_usage(self, key: str) -> Dict[str, Any]:
        now = self._clock()
        config = self.get_config(key)
        with self._lock:
            window = self._windows.get(key)
            current = window.get_count(now) if window else 0
        return {
            "current": current,
            "limit": config.max_requests,
            "remaining": max(0, config.max_requests - current),
            "window_seconds": config.window_seconds,
        }

    def reset(self, key: str) -> int:
        """Forget the window and any override for a key. Returns windows cleared."""
        with self._lock:
            self._key_configs.pop(key, None)
            removed = 1 if self._windows.pop(key, None) is not None else 0

        if self._logger and removed:
            self._logger.debug("rate_limit_reset", key=key)
        return removed

    def cleanup_expired(self) -> int:
        """Drop windows with no activity left in them.

        Should be called periodically to prevent memory growth.
        """
        now = self._clock()
        with self._lock:
            idle = [k for k, w in self._windows.items() if w.is_idle(now)]
            for key in idle:
                del self._windows[key]

        if self._logger and idle:
            self._logger.debug("rate_limit_cleanup", entries_cleaned=len(idle))
        return len(idle)

    def window_count(self) -> int:
        with self._lock:
            return len(self._windows)
