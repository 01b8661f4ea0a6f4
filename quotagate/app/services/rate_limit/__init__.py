"""Fixed-window admission control shared across process instances.

This package provides atomic window counters in Redis (via a Lua script),
a SQL fallback counter when Redis is unavailable, and a fail-open policy
when both stores are down.
"""

from .clock import DAY, HOUR, MINUTE, PERIOD_ORDER, Period, Window, utc_now, window_end, window_for, window_start
from .evaluator import PLAN_SCOPE, QuotaEvaluator
from .fallback import DatabaseFallbackCounter
from .identifiers import IdentifierMode, IdentifierResolver, RequestContext
from .models import AdmissionDecision, BucketKey, PeriodStatus, Plan
from .observability import AdmissionEvent, LoggingSink, ObservabilitySink
from .redis_lua import INCREMENT_AND_BOUND_SCRIPT
from .routes import DEFAULT_ROUTE_OVERRIDES, RouteOverride, RouteOverrideResolver, resolve_route_override
from .service import (
    PlanLookup,
    RateLimitService,
    StaticPlanLookup,
    get_rate_limit_service,
    reset_rate_limit_service,
)
from .stores import CounterStore, InMemoryCounterStore, RedisCounterStore

__all__ = [
    "DAY",
    "HOUR",
    "MINUTE",
    "PERIOD_ORDER",
    "Period",
    "Window",
    "utc_now",
    "window_end",
    "window_for",
    "window_start",
    "PLAN_SCOPE",
    "QuotaEvaluator",
    "DatabaseFallbackCounter",
    "IdentifierMode",
    "IdentifierResolver",
    "RequestContext",
    "AdmissionDecision",
    "BucketKey",
    "PeriodStatus",
    "Plan",
    "AdmissionEvent",
    "LoggingSink",
    "ObservabilitySink",
    "INCREMENT_AND_BOUND_SCRIPT",
    "DEFAULT_ROUTE_OVERRIDES",
    "RouteOverride",
    "RouteOverrideResolver",
    "resolve_route_override",
    "PlanLookup",
    "RateLimitService",
    "StaticPlanLookup",
    "get_rate_limit_service",
    "reset_rate_limit_service",
    "CounterStore",
    "InMemoryCounterStore",
    "RedisCounterStore",
]
