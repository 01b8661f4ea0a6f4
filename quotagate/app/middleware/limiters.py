"""Pre-configured limiters."""

from quotagate.app.middleware.rate_limit import LimiterConfig
from quotagate.app.services.rate_limit import IdentifierMode

# Auth limiter: IP-based, 5 requests per 15 minutes
AUTH_LIMITER = LimiterConfig(
    window_seconds=15 * 60,
    max_requests=5,
    identifier_mode=IdentifierMode.IP,
    message="Too many login/register attempts. Please try again later.",
    name="auth",
)

# Global API limiter: IP-based, 100 requests per minute
API_LIMITER = LimiterConfig(
    window_seconds=60,
    max_requests=100,
    identifier_mode=IdentifierMode.IP,
    name="api",
)

# Caller-key limiter: 1000 requests per minute per key
API_KEY_LIMITER = LimiterConfig(
    window_seconds=60,
    max_requests=1000,
    identifier_mode=IdentifierMode.CALLER_KEY,
    name="api-key",
)

# Heavy operations: each request costs 5 units out of 50 per minute
HEAVY_OPERATION_LIMITER = LimiterConfig(
    window_seconds=60,
    max_requests=50,
    weight=5,
    identifier_mode=IdentifierMode.IP,
    message="Heavy operation rate limit exceeded. Try again later.",
    name="heavy",
)
