"""
Rate limiting package for the Public API.

Holds token-bucket implementations and related middleware that enforce
per-identity request budgets with burst tolerance.
"""

from .token_bucket import TokenBucket, TokenBucketRateLimiter, create_limiter
from .redis_bucket import RedisTokenBucketRateLimiter
from .client_ip import UNKNOWN_CLIENT, resolve_client_ip

__all__ = [
    "TokenBucket",
    "TokenBucketRateLimiter",
    "RedisTokenBucketRateLimiter",
    "create_limiter",
    "resolve_client_ip",
    "UNKNOWN_CLIENT",
]
