"""
Unit tests for the rate limit middleware and dependency.
"""

import math

import pytest
from unittest.mock import AsyncMock, MagicMock
from fastapi import Depends, FastAPI, Request
from fastapi.testclient import TestClient

from service_public_api.app.ratelimit.middleware import (
    GlobalRateLimitMiddleware,
    RateLimitDependency,
    acquire,
    rate_limit_headers,
    retry_after_seconds,
)
from service_public_api.app.ratelimit.token_bucket import TokenBucketRateLimiter
from shared.base_service import error_json_response
from shared.errors import RateLimitError
from shared.metrics import MetricsCollector

CLIENT = {"X-Forwarded-For": "93.184.216.34"}
OTHER_CLIENT = {"X-Forwarded-For": "198.51.100.77"}


def build_app(global_limiter, public_limiter):
    """Minimal app wired like the public API service."""
    app = FastAPI()
    app.add_middleware(
        GlobalRateLimitMiddleware,
        limiter=global_limiter,
        read_cost=1,
        write_cost=3,
        env="production",
    )
    public_rate_limit = RateLimitDependency(public_limiter, env="production")

    @app.exception_handler(RateLimitError)
    async def rate_limit_handler(request: Request, exc: RateLimitError):
        return error_json_response(exc)

    @app.get("/articles")
    async def list_articles():
        return {"articles": []}

    @app.post("/articles")
    async def create_article():
        return {"created": True}

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/public/share")
    async def public_share(rate=Depends(public_rate_limit)):
        return {"client_ip": rate["key"], "remaining": rate["remaining"]}

    return app


class TestGlobalRateLimitMiddleware:
    """Test cases for GlobalRateLimitMiddleware."""

    @pytest.fixture
    def global_limiter(self, clock):
        return TokenBucketRateLimiter(100, 1, name="global", clock=clock)

    @pytest.fixture
    def public_limiter(self, clock):
        return TokenBucketRateLimiter(2, 0.5, name="public", clock=clock)

    @pytest.fixture
    def client(self, global_limiter, public_limiter):
        return TestClient(build_app(global_limiter, public_limiter))

    def test_get_costs_one_token(self, client, global_limiter):
        """Reads are charged a single token."""
        response = client.get("/articles", headers=CLIENT)

        assert response.status_code == 200
        assert global_limiter.peek("93.184.216.34") == pytest.approx(99)

    def test_post_costs_three_tokens(self, client, global_limiter):
        """Mutations are charged three tokens."""
        response = client.post("/articles", headers=CLIENT)

        assert response.status_code == 200
        assert global_limiter.peek("93.184.216.34") == pytest.approx(97)

    def test_rate_limit_headers_on_success(self, client):
        """Admitted responses advertise the remaining budget."""
        response = client.get("/articles", headers=CLIENT)

        assert response.headers["X-RateLimit-Limit"] == "100"
        assert response.headers["X-RateLimit-Remaining"] == "99"

    def test_requests_without_forwarded_identity_are_not_charged(self, client, global_limiter):
        """Direct requests that bypass the proxy are let through uncharged."""
        response = client.get("/articles")

        assert response.status_code == 200
        assert len(global_limiter) == 0

    def test_exempt_paths_are_not_charged(self, client, global_limiter):
        """Health probes never consume tokens."""
        response = client.get("/health", headers=CLIENT)

        assert response.status_code == 200
        assert len(global_limiter) == 0

    def test_exhausted_bucket_returns_429(self, clock, public_limiter):
        """A denial becomes a standard too-many-requests error."""
        global_limiter = TokenBucketRateLimiter(3, 1, name="global", clock=clock)
        client = TestClient(build_app(global_limiter, public_limiter))

        assert client.post("/articles", headers=CLIENT).status_code == 200
        response = client.get("/articles", headers=CLIENT)

        assert response.status_code == 429
        data = response.json()
        assert data["code"] == "RATE_LIMIT_ERROR"
        assert data["message"] == "Too many requests. Please try again later."
        assert response.headers["Retry-After"] == "1"
        assert response.headers["X-RateLimit-Remaining"] == "0"

    def test_clients_are_limited_independently(self, clock, public_limiter):
        """One client's exhaustion does not affect another."""
        global_limiter = TokenBucketRateLimiter(3, 1, name="global", clock=clock)
        client = TestClient(build_app(global_limiter, public_limiter))

        client.post("/articles", headers=CLIENT)

        assert client.get("/articles", headers=CLIENT).status_code == 429
        assert client.get("/articles", headers=OTHER_CLIENT).status_code == 200

    def test_refill_readmits_client(self, clock, public_limiter):
        """After waiting, the same client is admitted again."""
        global_limiter = TokenBucketRateLimiter(3, 1, name="global", clock=clock)
        client = TestClient(build_app(global_limiter, public_limiter))

        client.post("/articles", headers=CLIENT)
        assert client.get("/articles", headers=CLIENT).status_code == 429

        clock.advance(1)
        assert client.get("/articles", headers=CLIENT).status_code == 200

    def test_global_denials_are_counted_as_errors(self, clock):
        """Global denials land in the same error counter as route-level ones."""
        metrics = MetricsCollector("test")
        global_limiter = TokenBucketRateLimiter(1, 1, name="global", clock=clock)
        app = FastAPI()
        app.add_middleware(
            GlobalRateLimitMiddleware, limiter=global_limiter, env="production", metrics=metrics
        )

        @app.get("/articles")
        async def list_articles():
            return {"articles": []}

        client = TestClient(app)
        client.get("/articles", headers=CLIENT)
        assert client.get("/articles", headers=CLIENT).status_code == 429

        assert metrics.get_sample_value(
            "errors_total", {"error_type": "RATE_LIMIT_ERROR", "service": "test"}
        ) == 1

    def test_cost_for_methods(self, global_limiter):
        """Method weights: reads 1, writes 3, preflight free."""
        middleware = GlobalRateLimitMiddleware(MagicMock(), limiter=global_limiter)

        assert middleware.cost_for("GET") == 1
        assert middleware.cost_for("head") == 1
        assert middleware.cost_for("POST") == 3
        assert middleware.cost_for("DELETE") == 3
        assert middleware.cost_for("OPTIONS") == 0


class TestRateLimitDependency:
    """Test cases for RateLimitDependency."""

    @pytest.fixture
    def global_limiter(self, clock):
        return TokenBucketRateLimiter(100, 1, name="global", clock=clock)

    @pytest.fixture
    def public_limiter(self, clock):
        return TokenBucketRateLimiter(2, 0.5, name="public", clock=clock)

    @pytest.fixture
    def client(self, global_limiter, public_limiter):
        return TestClient(build_app(global_limiter, public_limiter))

    def test_public_procedure_budget(self, client):
        """The public bucket admits its capacity, then denies."""
        first = client.get("/public/share", headers=CLIENT)
        second = client.get("/public/share", headers=CLIENT)
        third = client.get("/public/share", headers=CLIENT)

        assert first.status_code == 200
        assert first.json() == {"client_ip": "93.184.216.34", "remaining": 1}
        assert second.status_code == 200
        assert third.status_code == 429
        assert third.json()["code"] == "RATE_LIMIT_ERROR"
        assert third.headers["Retry-After"] == "2"

    def test_public_headers_on_success(self, client):
        """Admitted calls expose the public bucket's budget."""
        response = client.get("/public/share", headers=CLIENT)

        assert response.headers["X-RateLimit-Limit"] == "2"
        assert response.headers["X-RateLimit-Remaining"] == "1"

    def test_public_denial_reports_public_budget(self, clock, global_limiter):
        """A route-level 429 advertises the exhausted public bucket, not the global one."""
        public_limiter = TokenBucketRateLimiter(1, 0.5, name="public", clock=clock)
        client = TestClient(build_app(global_limiter, public_limiter))

        client.get("/public/share", headers=CLIENT)
        response = client.get("/public/share", headers=CLIENT)

        assert response.status_code == 429
        assert response.headers["X-RateLimit-Limit"] == "1"
        assert response.headers["X-RateLimit-Remaining"] == "0"
        assert response.headers["Retry-After"] == "2"

    def test_global_headers_on_unguarded_routes(self, client):
        """Routes without their own budget still carry the global headers."""
        response = client.get("/articles", headers=CLIENT)

        assert response.headers["X-RateLimit-Limit"] == "100"

    def test_unidentified_callers_share_a_bucket(self, client, public_limiter):
        """Callers resolved to the test client peer share its bucket."""
        client.get("/public/share")
        client.get("/public/share")

        assert client.get("/public/share").status_code == 429
        assert len(public_limiter) == 1

    def test_public_budget_is_per_client(self, client):
        """Another client keeps its own public budget."""
        client.get("/public/share", headers=CLIENT)
        client.get("/public/share", headers=CLIENT)

        assert client.get("/public/share", headers=OTHER_CLIENT).status_code == 200


class TestHelpers:
    """Test cases for middleware helpers."""

    @pytest.mark.asyncio
    async def test_acquire_awaits_async_limiters(self):
        """Coroutine-returning limiters (Redis backend) are awaited."""
        limiter = MagicMock()
        limiter.acquire = AsyncMock(return_value={"allowed": True, "limit": 5, "remaining": 4, "retry_after": 0.0})

        result = await acquire(limiter, "client", 1)

        assert result["allowed"] is True
        limiter.acquire.assert_awaited_once_with("client", 1)

    @pytest.mark.asyncio
    async def test_acquire_sync_limiters(self, clock):
        """Plain in-process limiters are called directly."""
        limiter = TokenBucketRateLimiter(5, 1, clock=clock)

        result = await acquire(limiter, "client", 2)

        assert result["remaining"] == 3

    @pytest.mark.parametrize("retry_after,expected", [
        (0.2, 1),
        (2.0, 2),
        (2.5, 3),
        (math.inf, None),
        (None, None),
    ])
    def test_retry_after_seconds(self, retry_after, expected):
        assert retry_after_seconds({"retry_after": retry_after}) == expected

    def test_rate_limit_headers(self):
        headers = rate_limit_headers({"limit": 50.0, "remaining": 12})
        assert headers == {"X-RateLimit-Limit": "50", "X-RateLimit-Remaining": "12"}
