"""
SQLAlchemy ORM Models — Document Cache

One row per (artifact_kind, source_id). The primary key is the MD5 of
"<artifact_kind>:<normalized source id>", so the two artifact kinds never
collide even for the same source.

created_at is epoch milliseconds; it drives TTL expiry and oldest-first
eviction on the write path.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import JSON, BigInteger, Index, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Cache entry: cache_entries
# ---------------------------------------------------------------------------

class CacheEntryRecord(Base):
    __tablename__ = "cache_entries"
    __table_args__ = (
        Index("idx_cache_entries_kind_created", "artifact_kind", "created_at"),
        Index("idx_cache_entries_source",       "source_id"),
    )

    cache_key:     Mapped[str] = mapped_column(String(32), primary_key=True)
    artifact_kind: Mapped[str] = mapped_column(String(32), nullable=False)
    source_id:     Mapped[str] = mapped_column(Text, nullable=False)
    artifact_text: Mapped[str] = mapped_column(Text, nullable=False)

    # {"processing_strategy": "enhanced" | "fallback", "text_length": int}
    entry_metadata: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)

    def __repr__(self) -> str:
        return f"<CacheEntryRecord kind={self.artifact_kind!r} source={self.source_id!r}>"
