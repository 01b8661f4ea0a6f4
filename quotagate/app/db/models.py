from sqlalchemy import BigInteger, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from quotagate.app.db.base import Base


class RateLimitBucket(Base):
    """Fallback copy of a fixed-window counter.

    One row per (scope, identifier, period, window_start). Times are epoch
    seconds in UTC so SQLite and PostgreSQL compare them identically.
    """

    __tablename__ = "rate_limit_buckets"
    __table_args__ = (
        UniqueConstraint(
            "scope", "identifier", "period", "window_start",
            name="uq_rate_limit_buckets_window",
        ),
        Index("idx_rate_limit_buckets_expires", "expires_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    scope: Mapped[str] = mapped_column(String(255))
    identifier: Mapped[str] = mapped_column(String(512))
    period: Mapped[str] = mapped_column(String(32))
    window_start: Mapped[int] = mapped_column(BigInteger)
    request_count: Mapped[int] = mapped_column(Integer, default=0)
    expires_at: Mapped[int] = mapped_column(BigInteger)

    def __repr__(self) -> str:
        return (
            f"<RateLimitBucket({self.scope}:{self.identifier}:{self.period}"
            f"@{self.window_start}={self.request_count})>"
        )
