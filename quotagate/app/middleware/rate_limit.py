"""Rate limiting for FastAPI applications.

Two entry points share the same admission engine:

- ``create_rate_limiter(config)`` returns a route dependency enforcing one
  fixed window (per-limiter quota, e.g. login attempts per IP).
- ``PlanRateLimitMiddleware`` enforces the caller's plan (MINUTE/HOUR/DAY)
  with route overrides on every request.

Both attach X-RateLimit-* headers to the response and reject with 429.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Sequence

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from quotagate.app.core.config import settings
from quotagate.app.core.logging import get_log_context, get_logger
from quotagate.app.exceptions import AdmissionError, IdentifierResolutionError, RateLimitExceededError
from quotagate.app.services.rate_limit import (
    AdmissionDecision,
    IdentifierMode,
    IdentifierResolver,
    Period,
    PlanLookup,
    RateLimitService,
    RequestContext,
    RouteOverride,
    RouteOverrideResolver,
    get_rate_limit_service,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class LimiterConfig:
    """Configuration of one standalone limiter instance.

    Attributes:
        window_seconds: Fixed window length
        max_requests: Weighted units allowed per window (0 disables the limiter)
        identifier_mode: How the caller is identified
        identifier_fn: Extractor used in custom mode
        message: Rejection message replacing the default one
        weight: Units each request consumes
        name: Counter namespace; limiters sharing a name share counters
        trusted_proxy_hops: Proxy hops trusted for X-Forwarded-For (None = settings)
    """
    window_seconds: int
    max_requests: int
    identifier_mode: IdentifierMode = IdentifierMode.IP
    identifier_fn: Optional[Callable[[RequestContext], Any]] = None
    message: Optional[str] = None
    weight: int = 1
    name: Optional[str] = None
    trusted_proxy_hops: Optional[int] = None

    def __post_init__(self) -> None:
        if self.window_seconds < 1:
            raise ValueError("window_seconds must be at least 1")
        if self.max_requests < 0:
            raise ValueError("max_requests must not be negative")
        if self.weight < 1:
            raise ValueError("weight must be at least 1")
        if IdentifierMode(self.identifier_mode) is IdentifierMode.CUSTOM and self.identifier_fn is None:
            raise ValueError("custom identifier mode requires identifier_fn")

    @property
    def limiter_name(self) -> str:
        if self.name:
            return self.name
        mode = IdentifierMode(self.identifier_mode).value
        return f"{mode}:{self.window_seconds}s:{self.max_requests}x{self.weight}"

    @property
    def period(self) -> Period:
        return Period.of_seconds(self.window_seconds)

    def resolver(self) -> IdentifierResolver:
        hops = self.trusted_proxy_hops
        if hops is None:
            hops = settings.rate_limit_trusted_proxy_hops
        return IdentifierResolver(self.identifier_mode, self.identifier_fn, hops)


def rate_limit_headers(decision: AdmissionDecision) -> Dict[str, str]:
    """Render a decision as response headers.

    Bypassed decisions (every limit 0) produce no headers. Retry-After is
    only present on denial.
    """
    if decision.is_bypassed:
        return {}
    headers = {
        "X-RateLimit-Limit": str(decision.limit),
        "X-RateLimit-Remaining": str(decision.remaining),
        "X-RateLimit-Reset": str(decision.reset_at_ms),
        "X-RateLimit-Weight": str(decision.weight),
    }
    if not decision.is_allowed and decision.retry_after_seconds is not None:
        headers["Retry-After"] = str(decision.retry_after_seconds)
    return headers


def rejection_for(decision: AdmissionDecision, message: Optional[str] = None) -> RateLimitExceededError:
    """Build the 429 error for a denied decision."""
    details = {
        "limit": decision.limit,
        "remaining": decision.remaining,
        "resetAt": decision.reset_at_ms,
        "retryAfter": decision.retry_after_seconds,
    }
    if decision.period is not None:
        details["period"] = decision.period.name
    return RateLimitExceededError(
        retry_after=decision.retry_after_seconds,
        message=message,
        details=details,
        headers=rate_limit_headers(decision),
    )


def error_response(exc: AdmissionError, path: Optional[str] = None) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(path),
        headers=exc.headers,
    )


def create_rate_limiter(
    config: LimiterConfig,
    service: Optional[RateLimitService] = None,
) -> Callable:
    """Create a FastAPI dependency enforcing ``config``.

    Usage:
        login_limiter = create_rate_limiter(AUTH_LIMITER)

        @router.post("/login", dependencies=[Depends(login_limiter)])
        async def login(): ...

    Raises (from the dependency):
        RateLimitExceededError: window exhausted
        IdentifierResolutionError: caller-key mode without a caller key
    """
    resolver = config.resolver()
    period = config.period

    async def rate_limit(request: Request, response: Response) -> AdmissionDecision:
        context = RequestContext.from_request(request)
        identifier = resolver.resolve(context)

        limiter_service = service or get_rate_limit_service()
        decision = await limiter_service.check_window(
            identifier,
            config.limiter_name,
            period,
            config.max_requests,
            weight=config.weight,
        )

        if not decision.is_allowed:
            raise rejection_for(decision, config.message)

        response.headers.update(rate_limit_headers(decision))
        return decision

    return rate_limit


class PlanRateLimitMiddleware(BaseHTTPMiddleware):
    """Middleware to enforce plan quotas on requests.

    The identifier comes from ``request.state.caller_key`` by default, which
    the authentication layer must set before this middleware runs. Matching
    route overrides replace the plan limits for that request only.
    """

    def __init__(
        self,
        app,
        plan_lookup: PlanLookup,
        route_overrides: Sequence[RouteOverride] = (),
        identifier_mode: IdentifierMode = IdentifierMode.CALLER_KEY,
        identifier_fn: Optional[Callable[[RequestContext], Any]] = None,
        require_identifier: bool = False,
        exempt_paths: Sequence[str] = ("/health",),
        service: Optional[RateLimitService] = None,
    ):
        super().__init__(app)
        self.plan_lookup = plan_lookup
        self.routes = RouteOverrideResolver(route_overrides)
        self.resolver = IdentifierResolver(
            identifier_mode, identifier_fn, settings.rate_limit_trusted_proxy_hops
        )
        self.require_identifier = require_identifier
        self.exempt_paths = frozenset(exempt_paths)
        self._service = service

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        """Process request with plan rate limiting."""
        context = RequestContext.from_request(request)
        if context.path in self.exempt_paths:
            return await call_next(request)

        try:
            identifier = self.resolver.resolve(context)
        except IdentifierResolutionError as e:
            if not self.require_identifier:
                return await call_next(request)
            logger.info(
                "Rejected request without rate-limit identifier",
                extra=get_log_context(path=context.path, method=context.method),
            )
            return error_response(e, context.path)

        service = self._service or get_rate_limit_service()
        decision = await service.admit(identifier, context.path, self.plan_lookup, self.routes)

        if not decision.is_allowed:
            return error_response(rejection_for(decision), context.path)

        response = await call_next(request)
        response.headers.update(rate_limit_headers(decision))
        return response
