"""Cache manifest ORM models.

One CacheEntry row exists per persisted cache key. The row records where the
key's content lives, a digest of that content, its size and when it was last
accessed, which drives LRU eviction across build invocations.
"""

from datetime import datetime, timezone

from sqlalchemy import BigInteger, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from stagebuild.db import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CacheEntry(Base):
    """ORM model for a persisted cache key.

    Attributes:
        id: Primary key.
        key: Cache key (explicit id or normalized mount target).
        dir_name: Content directory name under the cache root.
        content_digest: Digest of the content (content reference).
        size_bytes: Total size of the content.
        created_at: Timestamp of the first commit.
        last_accessed_at: Timestamp of the last acquire or commit.
    """

    __tablename__ = "cache_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    key: Mapped[str] = mapped_column(String(500), nullable=False, unique=True)
    dir_name: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    content_digest: Mapped[str | None] = mapped_column(String(64), nullable=True)
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=_utcnow
    )
    last_accessed_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=_utcnow, index=True
    )

    def __repr__(self) -> str:
        """Return string representation of CacheEntry."""
        return (
            f"<CacheEntry(key='{self.key}', size={self.size_bytes}, "
            f"last_accessed_at={self.last_accessed_at})>"
        )

    def touch(self) -> None:
        """Record an access now."""
        self.last_accessed_at = _utcnow()


__all__ = ["CacheEntry"]
