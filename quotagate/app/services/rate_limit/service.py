"""Admission service wiring stores, plans and route overrides together."""

from datetime import datetime
from typing import Callable, Dict, List, Optional, Protocol

from quotagate.app.core.config import settings
from quotagate.app.core.logging import get_logger

from .clock import Period, utc_now
from .evaluator import PLAN_SCOPE, QuotaEvaluator
from .fallback import DatabaseFallbackCounter
from .models import AdmissionDecision, Plan, PeriodStatus
from .observability import ObservabilitySink
from .routes import RouteOverride, RouteOverrideResolver
from .stores import CounterStore, InMemoryCounterStore, RedisCounterStore

logger = get_logger(__name__)


class PlanLookup(Protocol):
    """Plan source owned by the entity-management layer.

    Implementations may hit a database; callers are expected to cache.
    """

    async def get_plan(self, identifier: str) -> Optional[Plan]:
        ...


class StaticPlanLookup:
    """In-process plan table for tests and single-tenant deployments."""

    def __init__(self, default: Optional[Plan] = None, plans: Optional[Dict[str, Plan]] = None) -> None:
        self._default = default
        self._plans = dict(plans or {})

    async def get_plan(self, identifier: str) -> Optional[Plan]:
        return self._plans.get(identifier, self._default)


class RateLimitService:
    """Entry point for admission checks.

    Provides:
    - Plan-based checks over MINUTE/HOUR/DAY windows
    - Route overrides that replace the plan for matching paths
    - Single-window checks for standalone limiters
    - Redis as the shared store, with a SQL fallback when Redis is unavailable

    Bucket scopes:
    - plan                  - the caller's plan counters
    - route:{name}          - route override counters
    - limiter:{name}        - standalone limiter counters
    """

    def __init__(
        self,
        primary: Optional[CounterStore] = None,
        fallback: Optional[CounterStore] = None,
        sink: Optional[ObservabilitySink] = None,
        use_redis: Optional[bool] = None,
        use_fallback: Optional[bool] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        should_use_redis = use_redis if use_redis is not None else settings.redis_enabled
        if primary is None:
            if should_use_redis:
                primary = RedisCounterStore()
                logger.info("Using Redis counter store")
            else:
                primary = InMemoryCounterStore()
                logger.debug("Using in-memory counter store")

        should_use_fallback = (
            use_fallback if use_fallback is not None else settings.rate_limit_fallback_enabled
        )
        if fallback is None and should_use_fallback and isinstance(primary, RedisCounterStore):
            fallback = DatabaseFallbackCounter()

        self.evaluator = QuotaEvaluator(primary, fallback, sink, clock=clock)

    @property
    def primary(self) -> CounterStore:
        return self.evaluator.primary

    @property
    def fallback(self) -> Optional[CounterStore]:
        return self.evaluator.fallback

    async def check_plan(
        self,
        identifier: str,
        plan: Plan,
        weight: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> AdmissionDecision:
        """Check a request against the caller's plan windows."""
        return await self.evaluator.evaluate(
            identifier,
            plan.limits_by_period(),
            weight=weight if weight is not None else plan.burst_weight,
            scope=PLAN_SCOPE,
            now=now,
        )

    async def check_route(
        self,
        identifier: str,
        override: RouteOverride,
        weight: int = 1,
        now: Optional[datetime] = None,
    ) -> AdmissionDecision:
        """Check a request against a route override instead of the plan."""
        return await self.evaluator.evaluate(
            identifier,
            override.limits_by_period(),
            weight=weight,
            scope=override.scope,
            now=now,
        )

    async def check_window(
        self,
        identifier: str,
        name: str,
        period: Period,
        max_requests: int,
        weight: int = 1,
        now: Optional[datetime] = None,
    ) -> AdmissionDecision:
        """Check a request against a single fixed window owned by one limiter."""
        return await self.evaluator.evaluate(
            identifier,
            {period: max_requests},
            weight=weight,
            scope=f"limiter:{name}",
            now=now,
        )

    async def admit(
        self,
        identifier: str,
        path: str,
        plan_lookup: PlanLookup,
        routes: Optional[RouteOverrideResolver] = None,
        weight: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> AdmissionDecision:
        """Full admission flow: route override first, else the caller's plan.

        Identifiers unknown to ``plan_lookup`` get ``settings.default_plan()``.
        """
        override = routes.match(path) if routes is not None else None
        if override is not None:
            route_weight = weight if weight is not None else 1
            return await self.check_route(identifier, override, weight=route_weight, now=now)

        plan = await plan_lookup.get_plan(identifier)
        if plan is None:
            plan = settings.default_plan()
        return await self.check_plan(identifier, plan, weight=weight, now=now)

    async def usage(
        self,
        identifier: str,
        plan: Plan,
        now: Optional[datetime] = None,
    ) -> List[PeriodStatus]:
        """Current plan consumption per window, without consuming."""
        return await self.evaluator.usage(identifier, plan.limits_by_period(), now=now)

    async def close(self) -> None:
        """Close the stores and release their connections."""
        await self.primary.close()
        if self.fallback is not None:
            await self.fallback.close()


_rate_limit_service: Optional[RateLimitService] = None


def get_rate_limit_service() -> RateLimitService:
    """Get the global rate limit service instance."""
    global _rate_limit_service
    if _rate_limit_service is None:
        _rate_limit_service = RateLimitService()
    return _rate_limit_service


def reset_rate_limit_service() -> None:
    """Reset the global rate limit service instance."""
    global _rate_limit_service
    _rate_limit_service = None
