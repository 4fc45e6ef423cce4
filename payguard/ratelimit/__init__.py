# Admin rate limiting
from .limiter import (
    AdminRateLimiter,
    InMemoryRateLimitBackend,
    RateLimitBackend,
    RedisRateLimitBackend,
    default_policies,
)

__all__ = [
    "AdminRateLimiter",
    "InMemoryRateLimitBackend",
    "RateLimitBackend",
    "RedisRateLimitBackend",
    "default_policies",
]
