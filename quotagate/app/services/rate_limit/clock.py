"""Fixed-window clock.

Windows are aligned to multiples of the period length since the Unix epoch,
always in UTC. For MINUTE, HOUR and DAY this is the same as truncating the
wall-clock time to the start of the minute, hour or UTC day.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone


@dataclass(frozen=True)
class Period:
    """A fixed window length with a stable name used in bucket keys."""

    name: str
    seconds: int

    def __post_init__(self) -> None:
        if self.seconds < 1:
            raise ValueError("period length must be at least one second")

    @classmethod
    def of_seconds(cls, seconds: int) -> "Period":
        """Return the named period for this length, or a custom one."""
        for period in PERIOD_ORDER:
            if period.seconds == seconds:
                return period
        return cls(name=f"{seconds}S", seconds=seconds)

    @property
    def duration(self) -> timedelta:
        return timedelta(seconds=self.seconds)

    def __str__(self) -> str:
        return self.name


MINUTE = Period("MINUTE", 60)
HOUR = Period("HOUR", 3600)
DAY = Period("DAY", 86400)

# Tightest window first; this order decides which denial is reported.
PERIOD_ORDER = (MINUTE, HOUR, DAY)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class Window:
    start: datetime
    end: datetime

    @property
    def start_epoch(self) -> int:
        return int((self.start - _EPOCH).total_seconds())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(now: datetime) -> datetime:
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


def window_start(period: Period, now: datetime) -> datetime:
    """Truncate ``now`` down to the most recent boundary of ``period``."""
    now = _as_utc(now)
    elapsed = now - _EPOCH
    whole_seconds = elapsed.days * 86400 + elapsed.seconds
    return _EPOCH + timedelta(seconds=whole_seconds - whole_seconds % period.seconds)


def window_end(period: Period, now: datetime) -> datetime:
    return window_start(period, now) + period.duration


def window_for(period: Period, now: datetime) -> Window:
    """Compute start and end from a single clock sample."""
    start = window_start(period, now)
    return Window(start=start, end=start + period.duration)


def seconds_until(instant: datetime, now: datetime) -> float:
    return (_as_utc(instant) - _as_utc(now)).total_seconds()
