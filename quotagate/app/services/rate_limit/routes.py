"""Route-specific limit overrides.

Overrides are an ordered list scanned linearly and the first matching
pattern wins. Keep it a list: a dict keyed by pattern would lose the
priority order and change which override applies to overlapping patterns.
"""

import re
from dataclasses import dataclass, field
from typing import Dict, Optional, Pattern, Sequence, Union

from .clock import DAY, HOUR, MINUTE, Period


@dataclass(frozen=True)
class RouteOverride:
    """Limits that replace the caller's plan for matching paths.

    ``pattern`` is searched against the request path; anchor it with ``^``/``$``
    for exact matches. Counters live under ``scope``, separate from plan
    counters, so route traffic never consumes plan quota twice.
    """
    pattern: Union[str, Pattern[str]]
    requests_per_minute: int = 0
    requests_per_hour: int = 0
    requests_per_day: int = 0
    name: Optional[str] = None
    _regex: Pattern[str] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        regex = self.pattern if isinstance(self.pattern, re.Pattern) else re.compile(self.pattern)
        object.__setattr__(self, "_regex", regex)
        if min(self.requests_per_minute, self.requests_per_hour, self.requests_per_day) < 0:
            raise ValueError("route override limits must not be negative")

    def matches(self, path: str) -> bool:
        return self._regex.search(path) is not None

    @property
    def scope(self) -> str:
        return f"route:{self.name or self._regex.pattern}"

    def limits_by_period(self) -> Dict[Period, int]:
        return {
            MINUTE: self.requests_per_minute,
            HOUR: self.requests_per_hour,
            DAY: self.requests_per_day,
        }


def resolve_route_override(
    path: str, overrides: Sequence[RouteOverride]
) -> Optional[RouteOverride]:
    """Return the first override whose pattern matches ``path``."""
    for override in overrides:
        if override.matches(path):
            return override
    return None


class RouteOverrideResolver:
    """Read-only holder of an ordered override list."""

    def __init__(self, overrides: Sequence[RouteOverride] = ()) -> None:
        self._overrides = tuple(overrides)

    @property
    def overrides(self) -> tuple:
        return self._overrides

    def match(self, path: str) -> Optional[RouteOverride]:
        return resolve_route_override(path, self._overrides)

    def resolve(self, path: str) -> Optional[Dict[Period, int]]:
        override = self.match(path)
        return override.limits_by_period() if override is not None else None


DEFAULT_ROUTE_OVERRIDES = (
    RouteOverride(r"^/api/v1/ping$", 60, 1000, 10000, name="ping"),
    RouteOverride(r"^/api/v1/data", 30, 500, 5000, name="data"),
    RouteOverride(r"^/api/v1/admin", 10, 100, 1000, name="admin"),
    RouteOverride(r"^/api/v1/upload", 5, 50, 500, name="upload"),
)
