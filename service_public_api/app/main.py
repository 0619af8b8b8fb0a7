"""
Public API service for the Feed Reader Access Layer.
"""

import asyncio
from typing import Any, Dict, Optional

from fastapi import Depends

from shared.base_service import BaseService
from shared.config import ServiceConfig
from shared.errors import NotFoundError
from .ratelimit.middleware import GlobalRateLimitMiddleware, RateLimitDependency
from .ratelimit.redis_bucket import RedisTokenBucketRateLimiter
from .ratelimit.token_bucket import TokenBucketRateLimiter


class PublicApiService(BaseService):
    """Public API service implementation."""

    def __init__(self, config: Optional[ServiceConfig] = None):
        self.limiters: Dict[str, Any] = {}
        self._sweeper_task: Optional[asyncio.Task] = None
        super().__init__("public_api", 8000, config=config)

        self.public_rate_limit = RateLimitDependency(
            self.limiters["public"],
            cost=1,
            env=self.config.env,
            dev_client_ip=self.config.dev_client_ip,
        )

        @self.app.on_event("startup")
        async def _startup():
            if self._sweepable_limiters():
                self._sweeper_task = asyncio.create_task(self._sweep_loop())

        @self.app.on_event("shutdown")
        async def _shutdown():
            if self._sweeper_task is not None:
                self._sweeper_task.cancel()
                try:
                    await self._sweeper_task
                except asyncio.CancelledError:
                    pass
                self._sweeper_task = None
            for limiter in self.limiters.values():
                if isinstance(limiter, RedisTokenBucketRateLimiter):
                    await limiter.close()

        self._setup_public_routes()
        self._setup_rate_limit_routes()

        # Expose service instance via app state for introspection/testing
        self.app.state.public_api_service = self

    def _build_limiter(self, name: str, capacity: float, refill_rate_per_second: float):
        """Create a limiter on the configured backend."""
        if self.config.rate_limit_backend == "redis":
            return RedisTokenBucketRateLimiter(
                self.config.redis_url,
                capacity,
                refill_rate_per_second,
                name=name,
                key_prefix=self.config.rate_limit_key_prefix,
                metrics=self.metrics,
            )
        return TokenBucketRateLimiter(
            capacity,
            refill_rate_per_second,
            name=name,
            max_keys=self.config.rate_limit_max_keys,
            idle_ttl_seconds=self.config.rate_limit_idle_ttl_seconds,
            metrics=self.metrics,
        )

    def _setup_middleware(self):
        """Install admission control beneath the shared CORS and timing middleware."""
        self.limiters["global"] = self._build_limiter(
            "global",
            self.config.global_rate_limit_capacity,
            self.config.global_rate_limit_refill_per_second,
        )
        self.limiters["public"] = self._build_limiter(
            "public",
            self.config.public_rate_limit_capacity,
            1.0 / self.config.public_rate_limit_refill_interval_seconds,
        )

        self.app.add_middleware(
            GlobalRateLimitMiddleware,
            limiter=self.limiters["global"],
            read_cost=self.config.global_rate_limit_get_cost,
            write_cost=self.config.global_rate_limit_post_cost,
            env=self.config.env,
            dev_client_ip=self.config.dev_client_ip,
            metrics=self.metrics,
        )
        super()._setup_middleware()

    def _sweepable_limiters(self):
        return [
            limiter for limiter in self.limiters.values()
            if isinstance(limiter, TokenBucketRateLimiter) and limiter.idle_ttl_seconds is not None
        ]

    def sweep_idle_buckets(self) -> Dict[str, int]:
        """Drop idle buckets from every in-process limiter."""
        removed = {}
        for limiter in self._sweepable_limiters():
            removed[limiter.name] = limiter.sweep_idle()
        return removed

    async def _sweep_loop(self):
        interval = self.config.rate_limit_sweep_interval_seconds
        while True:
            await asyncio.sleep(interval)
            removed = self.sweep_idle_buckets()
            self.logger.debug("Idle bucket sweep finished", removed=removed)

    def _get_limiter(self, name: str):
        limiter = self.limiters.get(name)
        if limiter is None:
            raise NotFoundError(
                f"Unknown rate limiter: {name}",
                details={"available": sorted(self.limiters)}
            )
        return limiter

    async def _call(self, limiter: Any, method: str, *args):
        result = getattr(limiter, method)(*args)
        if asyncio.iscoroutine(result):
            result = await result
        return result

    def _setup_public_routes(self):
        """Set up public routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": self.service_name,
                "message": "Feed Reader Access Layer - Public API",
                "version": "1.0.0"
            }

        @self.app.get("/api/v1/public/whoami")
        async def whoami(rate: Dict[str, Any] = Depends(self.public_rate_limit)):
            """Report the identity the rate limiter sees for the caller."""
            return {
                "client_ip": rate["key"],
                "limit": rate["limit"],
                "remaining": rate["remaining"],
            }

    def _setup_rate_limit_routes(self):
        """Set up rate limit inspection routes."""

        @self.app.get("/api/v1/rate-limits")
        async def get_rate_limits():
            """Configured limits and tracked bucket counts."""
            limiters = {}
            for name, limiter in self.limiters.items():
                limiters[name] = await self._call(limiter, "stats")
            return {
                "backend": self.config.rate_limit_backend,
                "limiters": limiters,
                "costs": {
                    "read": self.config.global_rate_limit_get_cost,
                    "write": self.config.global_rate_limit_post_cost,
                }
            }

        @self.app.get("/api/v1/rate-limits/{limiter_name}/{key}")
        async def get_rate_limit_status(limiter_name: str, key: str):
            """Status of one identity's bucket."""
            limiter = self._get_limiter(limiter_name)
            return await self._call(limiter, "status", key)

        @self.app.delete("/api/v1/rate-limits/{limiter_name}/{key}")
        async def reset_rate_limit(limiter_name: str, key: str):
            """Reset one identity's bucket."""
            limiter = self._get_limiter(limiter_name)
            removed = await self._call(limiter, "reset", key)
            return {"limiter": limiter_name, "key": key, "reset": removed}

    async def _check_dependencies(self) -> Dict[str, str]:
        """Check the rate limit store."""
        dependencies = {}
        if self.config.rate_limit_backend == "redis":
            healthy = all([
                await limiter.ping() for limiter in self.limiters.values()
                if isinstance(limiter, RedisTokenBucketRateLimiter)
            ])
            dependencies["rate_limit_store"] = "ok" if healthy else "error"
        else:
            dependencies["rate_limit_store"] = "ok"
        return dependencies


def create_app(config: Optional[ServiceConfig] = None):
    """Create FastAPI application."""
    service = PublicApiService(config=config)
    return service.app


if __name__ == "__main__":
    service = PublicApiService()
    service.run()
