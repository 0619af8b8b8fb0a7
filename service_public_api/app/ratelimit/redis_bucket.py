"""
Token bucket rate limiter with bucket state held in Redis.

Several API instances behind a load balancer share one logical budget per
identity. Refill and decrement run inside a single Lua script, so the
read-modify-write is atomic on the server and uses the server's clock.
"""

import math
from typing import Any, Dict, List, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from shared.errors import ServiceError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from .token_bucket import describe_decision


# KEYS[1] bucket hash; ARGV capacity, refill rate/s, cost, ttl seconds.
# Returns {allowed (0/1), tokens after the decision as a string}.
TOKEN_BUCKET_SCRIPT = """
local capacity = tonumber(ARGV[1])
local rate = tonumber(ARGV[2])
local cost = tonumber(ARGV[3])
local ttl = tonumber(ARGV[4])

-- TIME is non-deterministic; servers before 5.0 reject writes after it unless
-- effects replication is switched on
if redis.replicate_commands then
    redis.replicate_commands()
end

local clock = redis.call('TIME')
local now = tonumber(clock[1]) + tonumber(clock[2]) / 1000000

local state = redis.call('HMGET', KEYS[1], 'tokens', 'ts')
local tokens = tonumber(state[1])
local ts = tonumber(state[2])
if tokens == nil or ts == nil then
    tokens = capacity
    ts = now
end

local elapsed = math.max(0, now - ts)
tokens = math.min(capacity, tokens + elapsed * rate)

local allowed = 0
if tokens >= cost then
    tokens = tokens - cost
    allowed = 1
end

redis.call('HSET', KEYS[1], 'tokens', tostring(tokens), 'ts', tostring(now))
redis.call('EXPIRE', KEYS[1], ttl)
return {allowed, tostring(tokens)}
"""


class RedisTokenBucketRateLimiter:
    """Distributed token bucket rate limiter using Redis.

    Same admission semantics as the in-process limiter. When Redis cannot be
    reached the call is admitted and the failure is logged and counted.
    """

    def __init__(
        self,
        redis_url: str,
        capacity: float,
        refill_rate_per_second: float,
        *,
        name: str = "default",
        key_prefix: str = "rate_limit",
        metrics: Optional[MetricsCollector] = None,
    ):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        if refill_rate_per_second <= 0:
            raise ValueError("refill_rate_per_second must be positive")

        self.redis_url = redis_url
        self.capacity = float(capacity)
        self.refill_rate_per_second = float(refill_rate_per_second)
        self.name = name
        self.key_prefix = key_prefix
        self.metrics = metrics
        self.logger = get_logger(f"public_api.rate_limiter.{name}")
        self._redis: Optional[redis.Redis] = None
        self._script = None

    @classmethod
    def from_interval(
        cls, redis_url: str, capacity: float, refill_interval_seconds: float, **kwargs
    ) -> "RedisTokenBucketRateLimiter":
        if refill_interval_seconds <= 0:
            raise ValueError("refill_interval_seconds must be positive")
        return cls(redis_url, capacity, 1.0 / refill_interval_seconds, **kwargs)

    @property
    def backend(self) -> str:
        return "redis"

    @property
    def ttl_seconds(self) -> int:
        """Lifetime of an untouched bucket: by then it has refilled completely."""
        return int(math.ceil(self.capacity / self.refill_rate_per_second)) + 1

    async def _get_redis(self) -> redis.Redis:
        """Get Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(self.redis_url, decode_responses=True)
        return self._redis

    def _make_key(self, key: str) -> str:
        """Generate rate limit key."""
        return f"{self.key_prefix}:{self.name}:{key}"

    def _fail_open(self, key: str, cost: float, error: Exception) -> Dict[str, Any]:
        self.logger.error("Rate limit store unavailable, admitting request", key=key, error=str(error))
        if self.metrics is not None:
            self.metrics.record_rate_limit_backend_error(self.name)
        return {
            "allowed": True,
            "limit": self.capacity,
            "remaining": math.floor(self.capacity),
            "retry_after": 0.0,
            "error": str(error),
        }

    def _store_error(self, operation: str, key: str, error: Exception) -> ServiceError:
        self.logger.error("Rate limit store error", operation=operation, key=key, error=str(error))
        if self.metrics is not None:
            self.metrics.record_rate_limit_backend_error(self.name)
        return ServiceError(
            "Rate limit store unavailable",
            details={"limiter": self.name, "operation": operation},
        )

    async def consume(self, key: str, cost: float = 1) -> bool:
        """Take ``cost`` tokens from ``key``'s shared bucket if it holds enough."""
        result = await self.acquire(key, cost)
        return result["allowed"]

    async def acquire(self, key: str, cost: float = 1) -> Dict[str, Any]:
        """Consume and describe the decision (see the in-process limiter)."""
        if cost < 0:
            raise ValueError("cost must not be negative")
        cost = float(cost)

        try:
            redis_client = await self._get_redis()
            if self._script is None:
                self._script = redis_client.register_script(TOKEN_BUCKET_SCRIPT)
            allowed_flag, tokens = await self._script(
                keys=[self._make_key(key)],
                args=[self.capacity, self.refill_rate_per_second, cost, self.ttl_seconds],
            )
        except (RedisError, OSError) as e:
            return self._fail_open(key, cost, e)

        allowed = int(allowed_flag) == 1
        remaining = float(tokens)

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

    async def peek(self, key: str) -> Optional[float]:
        """Current token count for ``key``, or ``None`` if Redis holds no bucket."""
        try:
            redis_client = await self._get_redis()
            tokens, ts = await redis_client.hmget(self._make_key(key), ["tokens", "ts"])
            if tokens is None or ts is None:
                return None
            seconds, microseconds = await redis_client.time()
        except (RedisError, OSError) as e:
            raise self._store_error("peek", key, e)
        now = seconds + microseconds / 1_000_000
        elapsed = max(0.0, now - float(ts))
        return min(self.capacity, float(tokens) + elapsed * self.refill_rate_per_second)

    async def check(self, key: str, cost: float = 1) -> bool:
        """Whether ``consume(key, cost)`` would be admitted right now."""
        if cost < 0:
            raise ValueError("cost must not be negative")
        available = await self.peek(key)
        if available is None:
            return cost <= self.capacity
        return available >= cost

    async def status(self, key: str) -> Dict[str, Any]:
        """Describe ``key``'s bucket for operational endpoints."""
        available = await self.peek(key)
        return {
            "key": key,
            "limiter": self.name,
            "limit": self.capacity,
            "remaining": self.capacity if available is None else math.floor(available),
            "tracked": available is not None,
            "refill_rate_per_second": self.refill_rate_per_second,
        }

    async def reset(self, key: str) -> bool:
        """Reset rate limit for ``key``."""
        try:
            redis_client = await self._get_redis()
            removed = await redis_client.delete(self._make_key(key))
        except (RedisError, OSError) as e:
            raise self._store_error("reset", key, e)
        if removed:
            self.logger.info("Rate limit reset", key=key)
            if self.metrics is not None:
                self.metrics.record_rate_limit_eviction(self.name, "reset")
        return bool(removed)

    async def tracked_keys(self) -> List[str]:
        """Identities that currently hold a bucket in Redis."""
        redis_client = await self._get_redis()
        prefix = self._make_key("")
        keys = []
        async for raw in redis_client.scan_iter(match=f"{prefix}*"):
            if isinstance(raw, bytes):
                raw = raw.decode("utf-8")
            keys.append(raw[len(prefix):])
        return keys

    async def stats(self) -> Dict[str, Any]:
        """Configuration and number of live buckets."""
        stats: Dict[str, Any] = {
            "backend": self.backend,
            "capacity": self.capacity,
            "refill_rate_per_second": self.refill_rate_per_second,
            "ttl_seconds": self.ttl_seconds,
        }
        try:
            stats["tracked_keys"] = len(await self.tracked_keys())
        except (RedisError, OSError) as e:
            self.logger.error("Rate limit stats error", error=str(e))
            stats["error"] = str(e)
        return stats

    async def ping(self) -> bool:
        """Whether the shared store answers."""
        try:
            redis_client = await self._get_redis()
            return bool(await redis_client.ping())
        except (RedisError, OSError) as e:
            self.logger.error("Rate limit store health check failed", error=str(e))
            return False

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            self._script = None
