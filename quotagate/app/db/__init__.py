"""Database package for the fallback counter.

This package provides:
- The RateLimitBucket model
- Asynchronous session management
- CRUD operations for window rows
"""

from quotagate.app.db.base import Base
from quotagate.app.db.models import RateLimitBucket
from quotagate.app.db.async_session import (
    close_async_engine,
    get_async_engine,
    get_async_session_maker,
)

__all__ = [
    "Base",
    "RateLimitBucket",
    "close_async_engine",
    "get_async_engine",
    "get_async_session_maker",
]
