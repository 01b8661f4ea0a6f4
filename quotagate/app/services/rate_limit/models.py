"""Data models for admission control."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional

from .clock import DAY, HOUR, MINUTE, Period


@dataclass(frozen=True)
class Plan:
    """Per-caller quota limits, owned by the plan lookup collaborator.

    A limit of 0 disables tracking for that period.

    Attributes:
        requests_per_minute: Weighted units allowed per UTC minute
        requests_per_hour: Weighted units allowed per UTC hour
        requests_per_day: Weighted units allowed per UTC day
        burst_weight: Default weight of a check made against this plan
    """
    requests_per_minute: int = 0
    requests_per_hour: int = 0
    requests_per_day: int = 0
    burst_weight: int = 1

    def __post_init__(self) -> None:
        if min(self.requests_per_minute, self.requests_per_hour, self.requests_per_day) < 0:
            raise ValueError("plan limits must not be negative")
        if self.burst_weight < 1:
            raise ValueError("burst_weight must be at least 1")

    def limits_by_period(self) -> Dict[Period, int]:
        return {
            MINUTE: self.requests_per_minute,
            HOUR: self.requests_per_hour,
            DAY: self.requests_per_day,
        }


@dataclass(frozen=True)
class BucketKey:
    """Names one fixed-window counter."""
    scope: str
    identifier: str
    period: Period
    window_start: int  # epoch seconds

    def redis_key(self, prefix: str) -> str:
        return f"{prefix}:{self.scope}:{self.identifier}:{self.period.name}:{self.window_start}"


@dataclass(frozen=True)
class PeriodStatus:
    """Outcome of one window for one decision."""
    period: Period
    is_allowed: bool
    limit: int
    count: int
    remaining: int
    reset_at: datetime
    degraded: bool = False


@dataclass(frozen=True)
class AdmissionDecision:
    """Result of an admission check, rendered into response metadata.

    ``period`` is None when every window was bypassed (all limits are 0).
    """
    is_allowed: bool
    limit: int
    remaining: int
    reset_at: datetime
    retry_after_seconds: Optional[int] = None
    period: Optional[Period] = None
    weight: int = 1
    degraded: bool = field(default=False)

    @property
    def reset_at_ms(self) -> int:
        reset_at = self.reset_at
        if reset_at.tzinfo is None:
            reset_at = reset_at.replace(tzinfo=timezone.utc)
        return int(reset_at.timestamp() * 1000)

    @property
    def is_bypassed(self) -> bool:
        return self.period is None

    @classmethod
    def from_status(
        cls,
        status: PeriodStatus,
        weight: int,
        retry_after_seconds: Optional[int] = None,
        degraded: bool = False,
    ) -> "AdmissionDecision":
        return cls(
            is_allowed=status.is_allowed,
            limit=status.limit,
            remaining=status.remaining,
            reset_at=status.reset_at,
            retry_after_seconds=retry_after_seconds,
            period=status.period,
            weight=weight,
            degraded=degraded,
        )
