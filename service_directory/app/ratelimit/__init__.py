"""
Rate limiting package for the Directory service.

Holds the in-process token-bucket limiter and the middleware that
enforces per-identity request budgets with burst tolerance.
"""

from .middleware import RateLimitMiddleware
from .token_bucket import BucketRegistry, RateLimitDecision, TokenBucket, TokenBucketRateLimiter

__all__ = [
    "BucketRegistry",
    "RateLimitDecision",
    "RateLimitMiddleware",
    "TokenBucket",
    "TokenBucketRateLimiter",
]
