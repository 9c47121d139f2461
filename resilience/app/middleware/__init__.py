"""Middleware package for the service."""

from resilience.app.middleware.identity import get_client_key, get_identity
from resilience.app.middleware.rate_limit import (
    RateLimitConfig,
    RateLimitDecision,
    RateLimitMiddleware,
    SlidingWindowRateLimiter,
    create_api_rate_limiter,
    create_auth_rate_limiter,
    create_rate_limiter,
    enforce_rate_limit,
    rate_limit_dependency,
)
from resilience.app.middleware.request_id import RequestIdMiddleware, get_request_id

__all__ = [
    "get_client_key",
    "get_identity",
    "RateLimitConfig",
    "RateLimitDecision",
    "RateLimitMiddleware",
    "SlidingWindowRateLimiter",
    "create_api_rate_limiter",
    "create_auth_rate_limiter",
    "create_rate_limiter",
    "enforce_rate_limit",
    "rate_limit_dependency",
    "RequestIdMiddleware",
    "get_request_id",
]
