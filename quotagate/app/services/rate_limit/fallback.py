"""Durable fallback counter used while the shared store is unreachable.

Counts land in the ``rate_limit_buckets`` table. Consistency with the Redis
counters is looser (the two stores never reconcile), which is accepted in
exchange for not failing requests during a Redis outage.

SQL rows have no TTL. ``start_purge_task`` deletes ended windows every
``rate_limit_fallback_purge_interval`` seconds; the app lifespan starts it
whenever this counter is configured.
"""

import asyncio
import math
import time
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from quotagate.app.core.config import settings
from quotagate.app.core.logging import get_logger
from quotagate.app.db.async_session import get_async_session_maker
from quotagate.app.db.crud import get_bucket_count, increment_bucket, purge_expired_buckets
from quotagate.app.exceptions import FallbackUnavailableError

from .models import BucketKey
from .stores import CounterStore

logger = get_logger(__name__)


class DatabaseFallbackCounter(CounterStore):
    """Counter store backed by SQL rows with atomic upserts.

    Any failure of the database path (driver errors, timeouts, an unsupported
    dialect) surfaces as ``FallbackUnavailableError`` so the evaluator can
    fail open.
    """

    name = "database"

    def __init__(
        self,
        session_maker: Optional[async_sessionmaker[AsyncSession]] = None,
        timeout: Optional[float] = None,
        purge_interval: Optional[float] = None,
    ) -> None:
        self._session_maker = session_maker
        self._timeout = timeout or settings.rate_limit_fallback_timeout
        self._purge_interval = purge_interval or settings.rate_limit_fallback_purge_interval
        self._purge_task: Optional[asyncio.Task] = None
        self._shutdown_event = asyncio.Event()

    def _get_session_maker(self) -> async_sessionmaker[AsyncSession]:
        if self._session_maker is None:
            self._session_maker = get_async_session_maker()
        return self._session_maker

    async def _increment(self, bucket: BucketKey, weight: int, expires_at: int) -> int:
        async with self._get_session_maker()() as session:
            return await increment_bucket(
                session,
                scope=bucket.scope,
                identifier=bucket.identifier,
                period=bucket.period.name,
                window_start=bucket.window_start,
                weight=weight,
                expires_at=expires_at,
            )

    async def increment_and_bound(self, bucket: BucketKey, weight: int, ttl_seconds: int) -> int:
        # Rows store the window end, which is fixed per row, so the expiry can
        # never shrink. ttl_seconds only guards against a skewed local clock.
        expires_at = max(
            bucket.window_start + bucket.period.seconds,
            math.ceil(time.time()) + ttl_seconds,
        )
        try:
            return await asyncio.wait_for(
                self._increment(bucket, weight, expires_at),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as e:
            raise FallbackUnavailableError("Fallback counter timed out") from e
        except Exception as e:
            raise FallbackUnavailableError(f"Fallback counter failed: {e}") from e

    async def _get_count(self, bucket: BucketKey) -> int:
        async with self._get_session_maker()() as session:
            return await get_bucket_count(
                session,
                scope=bucket.scope,
                identifier=bucket.identifier,
                period=bucket.period.name,
                window_start=bucket.window_start,
            )

    async def get_count(self, bucket: BucketKey) -> int:
        try:
            return await asyncio.wait_for(self._get_count(bucket), timeout=self._timeout)
        except asyncio.TimeoutError as e:
            raise FallbackUnavailableError("Fallback counter read timed out") from e
        except Exception as e:
            raise FallbackUnavailableError(f"Fallback counter read failed: {e}") from e

    async def purge_expired(self, now: Optional[int] = None) -> int:
        """Delete window rows that have ended."""
        if now is None:
            now = int(time.time())
        async with self._get_session_maker()() as session:
            removed = await purge_expired_buckets(session, now)
        if removed:
            logger.info(f"Purged {removed} expired fallback buckets")
        return removed

    async def start_purge_task(self) -> None:
        """Start deleting ended windows in the background."""
        if self._purge_task is not None:
            return
        self._shutdown_event.clear()
        self._purge_task = asyncio.create_task(self._purge_loop())
        logger.info(f"Started fallback purge task (every {self._purge_interval}s)")

    async def stop_purge_task(self) -> None:
        if self._purge_task is None:
            return
        self._shutdown_event.set()
        try:
            await asyncio.wait_for(self._purge_task, timeout=5.0)
        except asyncio.TimeoutError:
            self._purge_task.cancel()
            try:
                await self._purge_task
            except asyncio.CancelledError:
                pass
        self._purge_task = None
        logger.info("Stopped fallback purge task")

    async def _purge_loop(self) -> None:
        while not self._shutdown_event.is_set():
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=self._purge_interval)
            except asyncio.TimeoutError:
                pass
            if self._shutdown_event.is_set():
                break
            try:
                await self.purge_expired()
            except Exception as e:
                logger.error(f"Error purging fallback buckets: {e}")

    async def close(self) -> None:
        await self.stop_purge_task()
