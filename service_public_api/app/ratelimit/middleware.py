"""
Request-side admission control for the public API.

Two collaborators consult the limiters before a procedure runs:

- ``GlobalRateLimitMiddleware`` charges every proxied request against the
  global bucket, weighting mutating methods more heavily than reads.
- ``RateLimitDependency`` guards individual public routes with their own,
  stricter bucket.

Both translate a denial into ``RateLimitError`` (HTTP 429).
"""

import inspect
import math
from typing import Any, Dict, Iterable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from shared.base_service import error_json_response
from shared.errors import RateLimitError
from shared.logging import get_logger, set_client_context
from shared.metrics import MetricsCollector
from .client_ip import has_forwarded_identity, resolve_client_ip

READ_METHODS = frozenset({"GET", "HEAD"})
FREE_METHODS = frozenset({"OPTIONS"})
DEFAULT_EXEMPT_PATHS = ("/health", "/metrics")


async def acquire(limiter: Any, key: str, cost: float) -> Dict[str, Any]:
    """Run ``limiter.acquire`` for in-process and Redis limiters alike."""
    result = limiter.acquire(key, cost)
    if inspect.isawaitable(result):
        result = await result
    return result


def retry_after_seconds(result: Dict[str, Any]) -> Optional[int]:
    """Whole seconds to advertise in ``Retry-After``; ``None`` if never."""
    retry_after = result.get("retry_after")
    if retry_after is None or math.isinf(retry_after):
        return None
    return max(1, int(math.ceil(retry_after)))


def rate_limit_headers(result: Dict[str, Any]) -> Dict[str, str]:
    """Propagate rate limiting metadata via standard headers."""
    headers = {}
    limit = result.get("limit")
    remaining = result.get("remaining")
    if limit is not None:
        headers["X-RateLimit-Limit"] = str(int(limit))
    if remaining is not None:
        headers["X-RateLimit-Remaining"] = str(int(remaining))
    return headers


def denial_error(result: Dict[str, Any], key: str, cost: float) -> RateLimitError:
    return RateLimitError(
        details={"limit": result.get("limit"), "cost": cost, "key": key},
        retry_after=retry_after_seconds(result),
        headers=rate_limit_headers(result),
    )


class GlobalRateLimitMiddleware(BaseHTTPMiddleware):
    """Charge every proxied request against the global token bucket."""

    def __init__(
        self,
        app,
        limiter: Any,
        read_cost: float = 1,
        write_cost: float = 3,
        exempt_paths: Iterable[str] = DEFAULT_EXEMPT_PATHS,
        env: str = "local",
        dev_client_ip: Optional[str] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        super().__init__(app)
        self.limiter = limiter
        self.read_cost = read_cost
        self.write_cost = write_cost
        self.exempt_paths = tuple(exempt_paths)
        self.env = env
        self.dev_client_ip = dev_client_ip
        self.metrics = metrics
        self.logger = get_logger("public_api.global_rate_limit")

    def cost_for(self, method: str) -> float:
        method = method.upper()
        if method in FREE_METHODS:
            return 0
        if method in READ_METHODS:
            return self.read_cost
        return self.write_cost

    def _is_exempt(self, request: Request) -> bool:
        if request.method.upper() in FREE_METHODS:
            return True
        path = request.url.path
        return any(path == exempt or path.startswith(exempt.rstrip("/") + "/") for exempt in self.exempt_paths)

    async def dispatch(self, request: Request, call_next):
        # Requests that bypassed the proxy carry no identity and are not charged
        if self._is_exempt(request) or not has_forwarded_identity(request.headers):
            return await call_next(request)

        key = resolve_client_ip(
            request.headers,
            request.client.host if request.client else None,
            env=self.env,
            dev_client_ip=self.dev_client_ip,
        )
        set_client_context(client_ip=key)
        cost = self.cost_for(request.method)
        result = await acquire(self.limiter, key, cost)

        if not result["allowed"]:
            self.logger.warning(
                "Global rate limit denied request",
                client_ip=key,
                method=request.method,
                path=request.url.path,
                cost=cost
            )
            if self.metrics is not None:
                self.metrics.record_error("RATE_LIMIT_ERROR")
            return error_json_response(denial_error(result, key, cost))

        response = await call_next(request)
        # Headers set by a route's own, stricter budget take precedence
        for name, value in rate_limit_headers(result).items():
            response.headers.setdefault(name, value)
        return response


class RateLimitDependency:
    """FastAPI dependency enforcing a per-route public procedure budget."""

    def __init__(
        self,
        limiter: Any,
        cost: float = 1,
        env: str = "local",
        dev_client_ip: Optional[str] = None,
    ):
        self.limiter = limiter
        self.cost = cost
        self.env = env
        self.dev_client_ip = dev_client_ip

    async def __call__(self, request: Request, response: Response) -> Dict[str, Any]:
        key = resolve_client_ip(
            request.headers,
            request.client.host if request.client else None,
            env=self.env,
            dev_client_ip=self.dev_client_ip,
        )
        set_client_context(client_ip=key)
        result = await acquire(self.limiter, key, self.cost)

        if not result["allowed"]:
            raise denial_error(result, key, self.cost)

        for name, value in rate_limit_headers(result).items():
            response.headers[name] = value
        return {**result, "key": key}
