"""Tests for QuotaEvaluator.

Tests cover:
- Most-restrictive-wins reduction on denial and on admission
- Weighted consumption
- Zero limits skipping windows
- Primary to fallback switching and fail-open
- Atomicity of concurrent checks
"""

import asyncio
from datetime import timedelta

import pytest

from quotagate.app.exceptions import FallbackUnavailableError, StoreUnavailableError
from quotagate.app.services.rate_limit import (
    DAY,
    HOUR,
    MINUTE,
    BucketKey,
    CounterStore,
    InMemoryCounterStore,
    QuotaEvaluator,
    window_for,
)
from quotagate.app.services.rate_limit.evaluator import ordered_periods
from quotagate.app.services.rate_limit.observability import (
    DEGRADED_EVALUATION,
    QUOTA_EXCEEDED,
    STORE_FAILURE,
)


class FailingStore(CounterStore):
    """Store that always raises the given error."""

    name = "failing"

    def __init__(self, error: Exception):
        self.error = error
        self.calls = 0

    async def increment_and_bound(self, bucket, weight, ttl_seconds):
        self.calls += 1
        raise self.error

    async def get_count(self, bucket):
        raise self.error


class ExplodingSink:
    def emit(self, event):
        raise RuntimeError("sink is broken")


async def seed(store, identifier, period, now, count):
    window = window_for(period, now)
    key = BucketKey(scope="plan", identifier=identifier, period=period, window_start=window.start_epoch)
    await store.increment_and_bound(key, count, period.seconds)


class TestOrderedPeriods:

    def test_skips_zero_and_sorts(self):
        periods = ordered_periods({DAY: 5, MINUTE: 1, HOUR: 0})
        assert periods == [(MINUTE, 1), (DAY, 5)]

    def test_negative_limit_rejected(self):
        with pytest.raises(ValueError):
            ordered_periods({MINUTE: -1})


class TestMostRestrictiveWins:
    """Reduction of per-window results to one decision."""

    @pytest.mark.asyncio
    async def test_denial_reports_minute_window(self, memory_store, sink, fixed_now):
        evaluator = QuotaEvaluator(memory_store, sink=sink)
        limits = {MINUTE: 2, HOUR: 100, DAY: 1000}

        first = await evaluator.evaluate("caller-1", limits, now=fixed_now)
        second = await evaluator.evaluate("caller-1", limits, now=fixed_now)
        third = await evaluator.evaluate("caller-1", limits, now=fixed_now)

        assert first.is_allowed and second.is_allowed
        assert not third.is_allowed
        assert third.period is MINUTE
        assert third.limit == 2
        assert third.remaining == 0
        assert third.reset_at == window_for(MINUTE, fixed_now).end
        assert third.retry_after_seconds == 30
        assert sink.kinds() == [QUOTA_EXCEEDED]

    @pytest.mark.asyncio
    async def test_denied_requests_still_consume(self, memory_store, fixed_now):
        evaluator = QuotaEvaluator(memory_store)
        limits = {MINUTE: 1, HOUR: 10}

        for _ in range(3):
            await evaluator.evaluate("caller-1", limits, now=fixed_now)

        statuses = await evaluator.usage("caller-1", limits, now=fixed_now)
        assert [status.count for status in statuses] == [3, 3]

    @pytest.mark.asyncio
    async def test_allowed_reports_smallest_remaining(self, memory_store, fixed_now):
        evaluator = QuotaEvaluator(memory_store)
        await seed(memory_store, "caller-1", MINUTE, fixed_now, 1)
        await seed(memory_store, "caller-1", HOUR, fixed_now, 3)
        await seed(memory_store, "caller-1", DAY, fixed_now, 3)

        decision = await evaluator.evaluate(
            "caller-1", {MINUTE: 100, HOUR: 5, DAY: 1000}, now=fixed_now
        )

        assert decision.is_allowed
        assert decision.period is HOUR
        assert decision.limit == 5
        assert decision.remaining == 1
        assert decision.retry_after_seconds is None
        assert decision.reset_at == window_for(HOUR, fixed_now).end

    @pytest.mark.asyncio
    async def test_tie_goes_to_tighter_window(self, memory_store, fixed_now):
        evaluator = QuotaEvaluator(memory_store)

        decision = await evaluator.evaluate("caller-1", {DAY: 10, MINUTE: 10}, now=fixed_now)

        assert decision.period is MINUTE
        assert decision.remaining == 9

    @pytest.mark.asyncio
    async def test_longer_window_denial_when_minute_has_room(self, memory_store, fixed_now):
        evaluator = QuotaEvaluator(memory_store)
        await seed(memory_store, "caller-1", DAY, fixed_now, 10)

        decision = await evaluator.evaluate("caller-1", {MINUTE: 100, DAY: 10}, now=fixed_now)

        assert not decision.is_allowed
        assert decision.period is DAY
        assert decision.retry_after_seconds == int(timedelta(days=1).total_seconds()) - 30


class TestWindows:

    @pytest.mark.asyncio
    async def test_boundary_starts_fresh_window(self, memory_store, fixed_now):
        evaluator = QuotaEvaluator(memory_store)
        before = fixed_now.replace(second=59, microsecond=999000)
        after = before + timedelta(milliseconds=1)

        assert (await evaluator.evaluate("caller-1", {MINUTE: 1}, now=before)).is_allowed
        assert not (await evaluator.evaluate("caller-1", {MINUTE: 1}, now=before)).is_allowed
        assert (await evaluator.evaluate("caller-1", {MINUTE: 1}, now=after)).is_allowed

    @pytest.mark.asyncio
    async def test_identifiers_are_isolated(self, memory_store, fixed_now):
        evaluator = QuotaEvaluator(memory_store)

        await evaluator.evaluate("a", {MINUTE: 1}, now=fixed_now)
        decision = await evaluator.evaluate("b", {MINUTE: 1}, now=fixed_now)

        assert decision.is_allowed

    @pytest.mark.asyncio
    async def test_scopes_are_isolated(self, memory_store, fixed_now):
        evaluator = QuotaEvaluator(memory_store)

        await evaluator.evaluate("a", {MINUTE: 1}, scope="plan", now=fixed_now)
        decision = await evaluator.evaluate("a", {MINUTE: 1}, scope="route:upload", now=fixed_now)

        assert decision.is_allowed

    @pytest.mark.asyncio
    async def test_default_clock_is_used(self, memory_store, fixed_now):
        evaluator = QuotaEvaluator(memory_store, clock=lambda: fixed_now)

        decision = await evaluator.evaluate("a", {MINUTE: 5})

        assert decision.reset_at == window_for(MINUTE, fixed_now).end


class TestWeights:

    @pytest.mark.asyncio
    async def test_weight_consumes_units(self, memory_store, fixed_now):
        evaluator = QuotaEvaluator(memory_store)

        decisions = [
            await evaluator.evaluate("caller-1", {MINUTE: 50}, weight=5, now=fixed_now)
            for _ in range(11)
        ]

        assert all(decision.is_allowed for decision in decisions[:10])
        assert not decisions[10].is_allowed
        assert decisions[9].remaining == 0
        assert decisions[0].weight == 5

    @pytest.mark.asyncio
    async def test_weight_must_be_positive(self, memory_store):
        evaluator = QuotaEvaluator(memory_store)

        with pytest.raises(ValueError):
            await evaluator.evaluate("caller-1", {MINUTE: 5}, weight=0)


class TestZeroLimits:

    @pytest.mark.asyncio
    async def test_zero_minute_never_contributes(self, memory_store, fixed_now):
        evaluator = QuotaEvaluator(memory_store)
        limits = {MINUTE: 0, HOUR: 3, DAY: 0}

        decisions = [await evaluator.evaluate("caller-1", limits, now=fixed_now) for _ in range(4)]

        assert all(decision.period is HOUR for decision in decisions)
        assert [decision.is_allowed for decision in decisions] == [True, True, True, False]

    @pytest.mark.asyncio
    async def test_all_zero_limits_bypass(self, memory_store, fixed_now):
        evaluator = QuotaEvaluator(memory_store)

        decision = await evaluator.evaluate("caller-1", {MINUTE: 0, HOUR: 0, DAY: 0}, now=fixed_now)

        assert decision.is_allowed
        assert decision.is_bypassed
        assert decision.limit == 0
        assert decision.remaining == 0
        assert decision.reset_at == fixed_now
        assert len(memory_store) == 0


class TestDegradation:
    """Primary failure, fallback use and fail-open."""

    @pytest.mark.asyncio
    async def test_fallback_counts_when_primary_fails(self, memory_store, sink, fixed_now):
        primary = FailingStore(StoreUnavailableError("redis down"))
        evaluator = QuotaEvaluator(primary, fallback=memory_store, sink=sink)

        first = await evaluator.evaluate("caller-1", {MINUTE: 1}, now=fixed_now)
        second = await evaluator.evaluate("caller-1", {MINUTE: 1}, now=fixed_now)

        assert first.is_allowed and not first.degraded
        assert not second.is_allowed
        assert sink.kinds().count(STORE_FAILURE) == 2
        assert DEGRADED_EVALUATION not in sink.kinds()

    @pytest.mark.asyncio
    async def test_fail_open_when_both_stores_fail(self, sink, fixed_now):
        primary = FailingStore(StoreUnavailableError("redis down"))
        fallback = FailingStore(FallbackUnavailableError("db down"))
        evaluator = QuotaEvaluator(primary, fallback=fallback, sink=sink)

        decisions = [
            await evaluator.evaluate("caller-1", {MINUTE: 1}, now=fixed_now) for _ in range(5)
        ]

        assert all(decision.is_allowed for decision in decisions)
        assert all(decision.degraded for decision in decisions)
        assert decisions[0].remaining == 1
        assert sink.kinds().count(DEGRADED_EVALUATION) == 5
        assert sink.kinds().count(STORE_FAILURE) == 5
        assert fallback.calls == 5

    @pytest.mark.asyncio
    async def test_fail_open_without_fallback(self, sink, fixed_now):
        evaluator = QuotaEvaluator(FailingStore(StoreUnavailableError("redis down")), sink=sink)

        decision = await evaluator.evaluate("caller-1", {MINUTE: 1, HOUR: 1}, now=fixed_now)

        assert decision.is_allowed
        assert decision.degraded
        assert sink.kinds().count(DEGRADED_EVALUATION) == 2

    @pytest.mark.asyncio
    async def test_partial_degradation_still_denies(self, sink, fixed_now):
        class MinuteOnlyStore(InMemoryCounterStore):
            async def increment_and_bound(self, bucket, weight, ttl_seconds):
                if bucket.period is not MINUTE:
                    raise StoreUnavailableError("shard down")
                return await super().increment_and_bound(bucket, weight, ttl_seconds)

        evaluator = QuotaEvaluator(MinuteOnlyStore(key_prefix="test"), sink=sink)

        await evaluator.evaluate("caller-1", {MINUTE: 1, HOUR: 10}, now=fixed_now)
        decision = await evaluator.evaluate("caller-1", {MINUTE: 1, HOUR: 10}, now=fixed_now)

        assert not decision.is_allowed
        assert decision.period is MINUTE
        assert decision.degraded

    @pytest.mark.asyncio
    async def test_broken_sink_does_not_change_decision(self, fixed_now):
        evaluator = QuotaEvaluator(
            FailingStore(StoreUnavailableError("redis down")), sink=ExplodingSink()
        )

        decision = await evaluator.evaluate("caller-1", {MINUTE: 1}, now=fixed_now)

        assert decision.is_allowed


class TestConcurrency:

    @pytest.mark.asyncio
    async def test_exactly_limit_admitted(self, redis_store, fixed_now):
        evaluator = QuotaEvaluator(redis_store)

        decisions = await asyncio.gather(
            *(evaluator.evaluate("caller-1", {MINUTE: 500}, now=fixed_now) for _ in range(1000))
        )

        assert sum(decision.is_allowed for decision in decisions) == 500


class TestUsage:

    @pytest.mark.asyncio
    async def test_usage_does_not_consume(self, memory_store, fixed_now):
        evaluator = QuotaEvaluator(memory_store)
        await evaluator.evaluate("caller-1", {MINUTE: 5, HOUR: 50}, weight=2, now=fixed_now)

        first = await evaluator.usage("caller-1", {MINUTE: 5, HOUR: 50}, now=fixed_now)
        second = await evaluator.usage("caller-1", {MINUTE: 5, HOUR: 50}, now=fixed_now)

        assert first == second
        assert [(s.period, s.count, s.remaining) for s in first] == [(MINUTE, 2, 3), (HOUR, 2, 48)]

    @pytest.mark.asyncio
    async def test_usage_degrades_when_stores_fail(self, sink, fixed_now):
        evaluator = QuotaEvaluator(FailingStore(StoreUnavailableError("redis down")), sink=sink)

        statuses = await evaluator.usage("caller-1", {MINUTE: 5}, now=fixed_now)

        assert statuses[0].degraded
        assert statuses[0].count == 0
