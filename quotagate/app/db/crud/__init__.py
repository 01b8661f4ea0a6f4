"""CRUD operations for the fallback counter tables."""

from quotagate.app.db.crud.bucket import (
    get_bucket_count,
    increment_bucket,
    purge_expired_buckets,
)

__all__ = [
    "get_bucket_count",
    "increment_bucket",
    "purge_expired_buckets",
]
