"""Middleware package for the admission engine."""

from quotagate.app.middleware.rate_limit import (
    LimiterConfig,
    PlanRateLimitMiddleware,
    create_rate_limiter,
    rate_limit_headers,
)

__all__ = [
    "LimiterConfig",
    "PlanRateLimitMiddleware",
    "create_rate_limiter",
    "rate_limit_headers",
]
