"""Observability sink for admission events.

Events are fire-and-forget: ``emit`` is synchronous, never awaited, and a
failing sink can never change an admission decision.
"""

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, Optional, Protocol

from quotagate.app.core.logging import get_log_context, get_logger

logger = get_logger(__name__)

STORE_FAILURE = "store_failure"
DEGRADED_EVALUATION = "degraded_evaluation"
QUOTA_EXCEEDED = "quota_exceeded"


@dataclass(frozen=True)
class AdmissionEvent:
    kind: str
    identifier: str
    scope: str
    period: Optional[str] = None
    detail: Optional[str] = None


class ObservabilitySink(Protocol):
    def emit(self, event: AdmissionEvent) -> None:
        ...


class LoggingSink:
    """Logs admission events and keeps per-kind counters.

    Store failures and degraded evaluations are warnings; quota denials are
    an expected outcome and only logged at info level.
    """

    LEVELS = {
        STORE_FAILURE: logging.WARNING,
        DEGRADED_EVALUATION: logging.WARNING,
        QUOTA_EXCEEDED: logging.INFO,
    }

    def __init__(self, log: Optional[logging.Logger] = None) -> None:
        self._logger = log or logger
        self._counts: Dict[str, int] = defaultdict(int)
        self._lock = threading.Lock()

    def emit(self, event: AdmissionEvent) -> None:
        with self._lock:
            self._counts[event.kind] += 1
        self._logger.log(
            self.LEVELS.get(event.kind, logging.INFO),
            f"Admission event {event.kind}" + (f": {event.detail}" if event.detail else ""),
            extra=get_log_context(
                identifier=event.identifier,
                scope=event.scope,
                period=event.period,
                event=event.kind,
            ),
        )

    def snapshot(self) -> Dict[str, int]:
        """Return a copy of the per-kind event counters."""
        with self._lock:
            return dict(self._counts)


def emit_safely(sink: ObservabilitySink, event: AdmissionEvent) -> None:
    """Deliver an event, logging instead of raising if the sink breaks."""
    try:
        sink.emit(event)
    except Exception:
        logger.exception(f"Observability sink failed to accept {event.kind} event")
