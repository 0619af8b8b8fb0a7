"""
In-process token bucket rate limiter for the public API.

Each key (normally a client IP) owns a bucket holding up to ``capacity``
tokens. Tokens come back continuously at ``refill_rate_per_second``; refill is
computed lazily whenever the bucket is touched, so no timer runs per key.
"""

import math
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Optional

from shared.logging import get_logger
from shared.metrics import MetricsCollector


def describe_decision(
    allowed: bool, cost: float, remaining: float, capacity: float, rate: float
) -> Dict[str, Any]:
    """Admission result shared by the in-process and Redis limiters."""
    if allowed:
        retry_after = 0.0
    elif cost > capacity:
        retry_after = math.inf
    else:
        retry_after = (cost - remaining) / rate
    return {
        "allowed": allowed,
        "limit": capacity,
        "remaining": math.floor(remaining),
        "retry_after": retry_after,
    }


class TokenBucket:
    """Mutable state of a single key's bucket."""

    __slots__ = ("key", "tokens", "last_refill", "lock")

    def __init__(self, key: str, tokens: float, last_refill: float):
        self.key = key
        self.tokens = tokens
        self.last_refill = last_refill
        self.lock = threading.Lock()

    def available(self, now: float, capacity: float, rate: float) -> float:
        """Token count at ``now`` without touching the stored state."""
        elapsed = max(0.0, now - self.last_refill)
        return min(capacity, self.tokens + elapsed * rate)

    def refill(self, now: float, capacity: float, rate: float) -> None:
        self.tokens = self.available(now, capacity, rate)
        # A reading older than the last refill (clock read under contention) must not rewind time
        self.last_refill = max(self.last_refill, now)

    def __repr__(self) -> str:
        return f"TokenBucket(key={self.key!r}, tokens={self.tokens:.3f}, last_refill={self.last_refill:.3f})"


class TokenBucketRateLimiter:
    """Per-key token bucket limiter with an optionally bounded registry.

    ``consume`` is safe to call from many threads: the registry lock is held
    only to find or create a bucket, the refill/decrement pair runs under the
    bucket's own lock, so callers on different keys do not serialize on each
    other's decisions.
    """

    def __init__(
        self,
        capacity: float,
        refill_rate_per_second: float,
        *,
        name: str = "default",
        max_keys: Optional[int] = None,
        idle_ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        metrics: Optional[MetricsCollector] = None,
    ):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        if refill_rate_per_second <= 0:
            raise ValueError("refill_rate_per_second must be positive")
        if max_keys is not None and max_keys <= 0:
            raise ValueError("max_keys must be positive")
        if idle_ttl_seconds is not None and idle_ttl_seconds <= 0:
            raise ValueError("idle_ttl_seconds must be positive")

        self.capacity = float(capacity)
        self.refill_rate_per_second = float(refill_rate_per_second)
        self.name = name
        self.max_keys = max_keys
        self.idle_ttl_seconds = idle_ttl_seconds
        self.metrics = metrics
        self._clock = clock
        self._buckets: "OrderedDict[str, TokenBucket]" = OrderedDict()
        self._lock = threading.Lock()
        self.logger = get_logger(f"public_api.rate_limiter.{name}")

    @classmethod
    def from_interval(cls, capacity: float, refill_interval_seconds: float, **kwargs) -> "TokenBucketRateLimiter":
        """Build a limiter that gives back one token every ``refill_interval_seconds``."""
        if refill_interval_seconds <= 0:
            raise ValueError("refill_interval_seconds must be positive")
        return cls(capacity, 1.0 / refill_interval_seconds, **kwargs)

    @property
    def backend(self) -> str:
        return "memory"

    def __len__(self) -> int:
        with self._lock:
            return len(self._buckets)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._buckets

    def _get_bucket(self, key: str) -> TokenBucket:
        """Return the bucket for ``key``, creating a full one on first touch."""
        evicted = 0
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = TokenBucket(key, self.capacity, self._clock())
                self._buckets[key] = bucket
                if self.max_keys is not None:
                    while len(self._buckets) > self.max_keys:
                        self._buckets.popitem(last=False)
                        evicted += 1
            else:
                self._buckets.move_to_end(key)
            tracked = len(self._buckets)

        if self.metrics is not None:
            self.metrics.set_tracked_keys(self.name, tracked)
            self.metrics.record_rate_limit_eviction(self.name, "lru", evicted)
        return bucket

    def _validate_cost(self, cost: float) -> float:
        if cost < 0:
            raise ValueError("cost must not be negative")
        return float(cost)

    def consume(self, key: str, cost: float = 1) -> bool:
        """Take ``cost`` tokens from ``key``'s bucket if it holds enough.

        Refill bookkeeping happens on every call, including denied ones, so a
        caller that waits benefits from the elapsed time on its next attempt.
        """
        return self.acquire(key, cost)["allowed"]

    def acquire(self, key: str, cost: float = 1) -> Dict[str, Any]:
        """Consume like :meth:`consume` and describe the decision.

        The result carries ``allowed``, ``limit``, ``remaining`` and
        ``retry_after`` (seconds until ``cost`` would be admitted, 0 when
        allowed) for response headers.
        """
        cost = self._validate_cost(cost)
        bucket = self._get_bucket(key)

        with bucket.lock:
            bucket.refill(self._clock(), self.capacity, self.refill_rate_per_second)
            allowed = bucket.tokens >= cost
            if allowed:
                bucket.tokens -= cost
            remaining = bucket.tokens

        if self.metrics is not None:
            self.metrics.record_rate_limit_decision(self.name, allowed)
        if not allowed:
            self.logger.warning(
                "Rate limit exceeded",
                limiter=self.name,
                key=key,
                cost=cost,
                remaining=round(remaining, 3),
                capacity=self.capacity
            )
        return describe_decision(allowed, cost, remaining, self.capacity, self.refill_rate_per_second)

    def check(self, key: str, cost: float = 1) -> bool:
        """Whether ``consume(key, cost)`` would be admitted right now."""
        cost = self._validate_cost(cost)
        available = self.peek(key)
        if available is None:
            return cost <= self.capacity
        return available >= cost

    def peek(self, key: str) -> Optional[float]:
        """Current token count for ``key``, or ``None`` if it is not tracked."""
        with self._lock:
            bucket = self._buckets.get(key)
        if bucket is None:
            return None
        with bucket.lock:
            return bucket.available(self._clock(), self.capacity, self.refill_rate_per_second)

    def status(self, key: str) -> Dict[str, Any]:
        """Describe ``key``'s bucket for operational endpoints."""
        available = self.peek(key)
        return {
            "key": key,
            "limiter": self.name,
            "limit": self.capacity,
            "remaining": self.capacity if available is None else math.floor(available),
            "tracked": available is not None,
            "refill_rate_per_second": self.refill_rate_per_second,
        }

    def reset(self, key: str) -> bool:
        """Forget ``key``'s bucket so its next request starts with a full one."""
        with self._lock:
            removed = self._buckets.pop(key, None) is not None
            tracked = len(self._buckets)

        if removed:
            self.logger.info("Rate limit reset", key=key)
            if self.metrics is not None:
                self.metrics.record_rate_limit_eviction(self.name, "reset")
                self.metrics.set_tracked_keys(self.name, tracked)
        return removed

    def sweep_idle(self, max_idle_seconds: Optional[float] = None) -> int:
        """Drop buckets not touched for longer than the idle threshold.

        An idle bucket has refilled to capacity long ago, so dropping it
        changes no admission decision.
        """
        threshold = max_idle_seconds if max_idle_seconds is not None else self.idle_ttl_seconds
        if threshold is None:
            return 0

        now = self._clock()
        with self._lock:
            stale = [key for key, bucket in self._buckets.items() if now - bucket.last_refill > threshold]
            for key in stale:
                del self._buckets[key]
            tracked = len(self._buckets)

        if stale:
            self.logger.info("Swept idle rate limit buckets", removed=len(stale), tracked=tracked)
        if self.metrics is not None:
            self.metrics.record_rate_limit_eviction(self.name, "idle", len(stale))
            self.metrics.set_tracked_keys(self.name, tracked)
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()

    def stats(self) -> Dict[str, Any]:
        """Configuration and registry size, for the rate limits endpoint."""
        return {
            "backend": self.backend,
            "capacity": self.capacity,
            "refill_rate_per_second": self.refill_rate_per_second,
            "max_keys": self.max_keys,
            "idle_ttl_seconds": self.idle_ttl_seconds,
            "tracked_keys": len(self),
        }


def create_limiter(capacity: float, refill_rate_per_second: float, **kwargs) -> TokenBucketRateLimiter:
    """Create an in-process token bucket limiter."""
    return TokenBucketRateLimiter(capacity, refill_rate_per_second, **kwargs)
