"""Rate limit bucket CRUD operations."""
from __future__ import annotations

from sqlalchemy import delete, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from quotagate.app.db.models import RateLimitBucket

_UPSERT_DIALECTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}

_WINDOW_COLUMNS = ["scope", "identifier", "period", "window_start"]


async def increment_bucket(
    session: AsyncSession,
    scope: str,
    identifier: str,
    period: str,
    window_start: int,
    weight: int,
    expires_at: int,
    auto_commit: bool = True,
) -> int:
    """Find-or-create a window row and add ``weight`` to it atomically.

    This runs as a single ``INSERT ... ON CONFLICT DO UPDATE ... RETURNING``
    statement, so concurrent callers are serialized by the database's own
    row locking and no increment is lost.

    Args:
        session: Database session
        scope: Bucket namespace (plan, route:<name>, limiter:<name>)
        identifier: Rate-limit identifier
        period: Period name
        window_start: Window start in epoch seconds
        weight: Units to add
        expires_at: Window end in epoch seconds
        auto_commit: Whether to commit the transaction

    Returns:
        The post-increment count
    """
    dialect = session.get_bind().dialect.name
    insert = _UPSERT_DIALECTS.get(dialect)
    if insert is None:
        raise ValueError(f"Fallback counter does not support the {dialect!r} dialect")

    stmt = insert(RateLimitBucket).values(
        scope=scope,
        identifier=identifier,
        period=period,
        window_start=window_start,
        request_count=weight,
        expires_at=expires_at,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=_WINDOW_COLUMNS,
        set_={"request_count": RateLimitBucket.request_count + weight},
    ).returning(RateLimitBucket.request_count)

    result = await session.execute(stmt)
    count = result.scalar_one()

    if auto_commit:
        await session.commit()

    return int(count)


async def get_bucket_count(
    session: AsyncSession,
    scope: str,
    identifier: str,
    period: str,
    window_start: int,
) -> int:
    """Get the current count of a window row (0 if it does not exist)."""
    result = await session.execute(
        select(RateLimitBucket.request_count).where(
            RateLimitBucket.scope == scope,
            RateLimitBucket.identifier == identifier,
            RateLimitBucket.period == period,
            RateLimitBucket.window_start == window_start,
        )
    )
    count = result.scalar_one_or_none()
    return int(count) if count is not None else 0


async def purge_expired_buckets(
    session: AsyncSession,
    now: int,
    auto_commit: bool = True,
) -> int:
    """Delete rows whose window ended at or before ``now`` (epoch seconds).

    Returns:
        Number of rows deleted
    """
    result = await session.execute(
        delete(RateLimitBucket).where(RateLimitBucket.expires_at <= now)
    )
    if auto_commit:
        await session.commit()
    return result.rowcount or 0
