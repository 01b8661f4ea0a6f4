"""Core utilities for the admission engine."""

from quotagate.app.core.config import settings
from quotagate.app.core.logging import get_logger, setup_logging

__all__ = [
    "settings",
    "get_logger",
    "setup_logging",
]
