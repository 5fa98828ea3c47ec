"""Cache index ORM models.

This module defines the CacheEntry model, one row per build-output entry in
the shared cache. The index records provenance and usage for `cache info`
and `cache prune`; the cache directory itself stays the source of truth for
whether an entry exists.
"""

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Index, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from rootfsgen.db import Base


class CacheEntry(Base):
    """ORM model for build-output cache entries.

    Attributes:
        id: Primary key.
        key: Cache key (64-char hex).
        package: Package name.
        version: Package version.
        checksum: Source checksum.
        target: Target triple.
        toolchain: Toolchain version.
        size_bytes: Size of the stored output.
        created_at: When the entry was first stored.
        last_used_at: When the entry was last stored, restored or reused.
    """

    __tablename__ = "cache_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    key: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)

    # Key inputs
    package: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    version: Mapped[str] = mapped_column(String(100), nullable=False)
    checksum: Mapped[str] = mapped_column(String(128), nullable=False)
    target: Mapped[str] = mapped_column(String(100), nullable=False)
    toolchain: Mapped[str] = mapped_column(String(50), nullable=False)

    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    __table_args__ = (Index("ix_cache_entries_last_used", "last_used_at"),)

    def __repr__(self) -> str:
        return f"<CacheEntry(package={self.package!r}, version={self.version!r}, key={self.key[:16]!r})>"


__all__ = ["CacheEntry"]
