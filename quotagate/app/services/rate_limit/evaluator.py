"""Multi-window quota evaluation.

One admission check increments every configured window for the identifier
(concurrently, one atomic store call each) and reduces the per-window results
to a single decision:

1. If any window is over its limit, report the first such window in
   tightest-first order, with a retry-after.
2. Otherwise report the window with the smallest remaining quota.

Check and increment are the same atomic call, so there is no gap between
"is there room?" and "take the room" for concurrent requests to slip through.
"""

import asyncio
import math
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from quotagate.app.core.logging import get_log_context, get_logger
from quotagate.app.exceptions import FallbackUnavailableError, StoreUnavailableError

from .clock import Period, seconds_until, utc_now, window_for
from .models import AdmissionDecision, BucketKey, PeriodStatus
from .observability import (
    DEGRADED_EVALUATION,
    QUOTA_EXCEEDED,
    STORE_FAILURE,
    AdmissionEvent,
    LoggingSink,
    ObservabilitySink,
    emit_safely,
)
from .stores import CounterStore

logger = get_logger(__name__)

PLAN_SCOPE = "plan"


def ordered_periods(limits_by_period: Dict[Period, int]) -> List[Tuple[Period, int]]:
    """Tracked (non-zero) windows, tightest first."""
    for period, limit in limits_by_period.items():
        if limit < 0:
            raise ValueError(f"limit for {period} must not be negative")
    return sorted(
        ((period, limit) for period, limit in limits_by_period.items() if limit > 0),
        key=lambda item: item[0].seconds,
    )


class QuotaEvaluator:
    """Evaluate weighted checks against fixed-window quotas.

    Store failures degrade instead of failing the request: the primary store
    falls back to ``fallback``, and if that fails too the window is treated
    as allowed and a degraded-evaluation event is emitted.
    """

    def __init__(
        self,
        primary: CounterStore,
        fallback: Optional[CounterStore] = None,
        sink: Optional[ObservabilitySink] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.primary = primary
        self.fallback = fallback
        self.sink = sink if sink is not None else LoggingSink()
        self._clock = clock

    def _emit(self, kind: str, bucket: BucketKey, detail: Optional[str] = None) -> None:
        emit_safely(
            self.sink,
            AdmissionEvent(
                kind=kind,
                identifier=bucket.identifier,
                scope=bucket.scope,
                period=bucket.period.name,
                detail=detail,
            ),
        )

    async def _increment(self, bucket: BucketKey, weight: int, ttl_seconds: int) -> Optional[int]:
        """Increment through primary then fallback; None means fail open."""
        try:
            return await self.primary.increment_and_bound(bucket, weight, ttl_seconds)
        except StoreUnavailableError as e:
            self._emit(STORE_FAILURE, bucket, e.message)
            logger.warning(
                f"{self.primary.name} counter store unavailable: {e.message}",
                extra=get_log_context(identifier=bucket.identifier, scope=bucket.scope, period=bucket.period.name),
            )

        if self.fallback is not None:
            try:
                return await self.fallback.increment_and_bound(bucket, weight, ttl_seconds)
            except FallbackUnavailableError as e:
                self._emit(DEGRADED_EVALUATION, bucket, e.message)
                return None

        self._emit(DEGRADED_EVALUATION, bucket, "no fallback counter configured")
        return None

    async def _check_period(
        self,
        identifier: str,
        scope: str,
        period: Period,
        limit: int,
        weight: int,
        now: datetime,
    ) -> PeriodStatus:
        window = window_for(period, now)
        bucket = BucketKey(scope=scope, identifier=identifier, period=period, window_start=window.start_epoch)
        ttl_seconds = max(1, math.ceil(seconds_until(window.end, now)))

        count = await self._increment(bucket, weight, ttl_seconds)
        if count is None:
            return PeriodStatus(
                period=period,
                is_allowed=True,
                limit=limit,
                count=0,
                remaining=limit,
                reset_at=window.end,
                degraded=True,
            )

        return PeriodStatus(
            period=period,
            is_allowed=count <= limit,
            limit=limit,
            count=count,
            remaining=max(0, limit - count),
            reset_at=window.end,
        )

    async def evaluate(
        self,
        identifier: str,
        limits_by_period: Dict[Period, int],
        weight: int = 1,
        scope: str = PLAN_SCOPE,
        now: Optional[datetime] = None,
    ) -> AdmissionDecision:
        """Consume ``weight`` units from every tracked window and decide.

        Args:
            identifier: Rate-limit identifier
            limits_by_period: Limit per window; 0 skips the window
            weight: Units this check consumes
            scope: Bucket namespace
            now: Clock sample shared by every window of this decision

        Returns:
            AdmissionDecision for the most restrictive window
        """
        if weight < 1:
            raise ValueError("weight must be at least 1")
        if now is None:
            now = self._clock()

        periods = ordered_periods(limits_by_period)
        if not periods:
            return AdmissionDecision(is_allowed=True, limit=0, remaining=0, reset_at=now, weight=weight)

        statuses = await asyncio.gather(
            *(self._check_period(identifier, scope, period, limit, weight, now) for period, limit in periods)
        )
        degraded = any(status.degraded for status in statuses)

        for status in statuses:
            if not status.is_allowed:
                retry_after = math.ceil(seconds_until(status.reset_at, now))
                emit_safely(
                    self.sink,
                    AdmissionEvent(
                        kind=QUOTA_EXCEEDED,
                        identifier=identifier,
                        scope=scope,
                        period=status.period.name,
                        detail=f"{status.count}/{status.limit}, retry after {retry_after}s",
                    ),
                )
                return AdmissionDecision.from_status(status, weight, retry_after, degraded)

        # min() keeps the first of equal values, so ties go to the tighter window.
        tightest = min(statuses, key=lambda status: status.remaining)
        return AdmissionDecision.from_status(tightest, weight, degraded=degraded)

    async def _read(self, bucket: BucketKey) -> Optional[int]:
        try:
            return await self.primary.get_count(bucket)
        except StoreUnavailableError as e:
            self._emit(STORE_FAILURE, bucket, e.message)
        if self.fallback is not None:
            try:
                return await self.fallback.get_count(bucket)
            except FallbackUnavailableError as e:
                self._emit(DEGRADED_EVALUATION, bucket, e.message)
        return None

    async def usage(
        self,
        identifier: str,
        limits_by_period: Dict[Period, int],
        scope: str = PLAN_SCOPE,
        now: Optional[datetime] = None,
    ) -> List[PeriodStatus]:
        """Report current consumption per tracked window without consuming."""
        if now is None:
            now = self._clock()

        async def _status(period: Period, limit: int) -> PeriodStatus:
            window = window_for(period, now)
            bucket = BucketKey(scope=scope, identifier=identifier, period=period, window_start=window.start_epoch)
            count = await self._read(bucket)
            return PeriodStatus(
                period=period,
                is_allowed=count is None or count < limit,
                limit=limit,
                count=count or 0,
                remaining=max(0, limit - (count or 0)),
                reset_at=window.end,
                degraded=count is None,
            )

        return list(await asyncio.gather(*(_status(p, limit) for p, limit in ordered_periods(limits_by_period))))
