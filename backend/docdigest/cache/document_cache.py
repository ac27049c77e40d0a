"""
Document Cache — persisted artifacts per (artifact kind, source)

Storage layout
──────────────
  SQLite table ``cache_entries`` (see models/cache.py), shared by every
  artifact kind. Each DocumentCache instance owns one namespace:

      cache_key = md5("<kind>:<normalized source id>")

  Local paths are made absolute before hashing; http(s) URLs are kept
  verbatim. A bounded in-memory LRU sits in front of the table and is kept
  coherent on every write, invalidation and clear.

Read path
─────────
  get_cached() is a pure lookup. It never compares timestamps: freshness is
  the watcher's job. A row whose text or metadata fails validation is a miss.

Write path housekeeping
───────────────────────
  After each write, if the namespace holds more than ``max_entries`` rows:
    1. rows older than ``ttl_days`` are deleted
    2. the oldest remaining rows are deleted until the limit holds
  The row just written is never evicted.
"""

from __future__ import annotations

import hashlib
import logging
import os
import time
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docdigest.cache.lru import BoundedLRU
from docdigest.core.config import settings
from docdigest.models.cache import CacheEntryRecord
from docdigest.schemas.cache import CacheEntryMetadata, CacheStats

logger = logging.getLogger(__name__)

_REMOTE_PREFIXES = ("http://", "https://")
_MS_PER_DAY      = 24 * 60 * 60 * 1000


# ---------------------------------------------------------------------------
# Source identity helpers
# ---------------------------------------------------------------------------

def is_remote_source(source_id: str) -> bool:
    return source_id.lower().startswith(_REMOTE_PREFIXES)


def normalize_source_id(source_id: str) -> str:
    """Absolute path for local sources, the URL unchanged for remote ones."""
    if is_remote_source(source_id):
        return source_id
    return os.path.abspath(os.path.expanduser(source_id))


def cache_key(kind: str, source_id: str) -> str:
    """MD5 hex digest of ``"<kind>:<normalized source id>"``."""
    raw = f"{kind}:{normalize_source_id(source_id)}"
    return hashlib.md5(raw.encode("utf-8"), usedforsecurity=False).hexdigest()


def _now_ms() -> int:
    return int(time.time() * 1000)


# ---------------------------------------------------------------------------
# DocumentCache
# ---------------------------------------------------------------------------

class DocumentCache:
    """
    One artifact-kind namespace of the persisted cache.

    Usage::

        cache = DocumentCache(session_factory, "summary")
        text = await cache.get_cached("/docs/report.pdf")
        if text is None:
            await cache.set_cached("/docs/report.pdf", artifact, metadata)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        kind:            str,
        *,
        max_entries:     int | None = None,
        ttl_days:        float | None = None,
        memory_capacity: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.kind        = str(getattr(kind, "value", kind))
        self.max_entries = max_entries if max_entries is not None else settings.cache_max_entries
        self.ttl_days    = ttl_days if ttl_days is not None else settings.cache_ttl_days
        self._memory: BoundedLRU[str, str] = BoundedLRU(
            memory_capacity if memory_capacity is not None else settings.cache_memory_capacity
        )

    @property
    def memory(self) -> BoundedLRU[str, str]:
        return self._memory

    def key_for(self, source_id: str) -> str:
        return cache_key(self.kind, source_id)

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def get_cached(self, source_id: str) -> str | None:
        """Cached artifact text for ``source_id``, or None on a miss."""
        key = self.key_for(source_id)
        hit = self._memory.get(key)
        if hit is not None:
            logger.debug("DocumentCache | memory hit kind=%s source=%s", self.kind, source_id)
            return hit

        async with self._session_factory() as session:
            record = await session.get(CacheEntryRecord, key)

        if record is None:
            logger.debug("DocumentCache | miss kind=%s source=%s", self.kind, source_id)
            return None
        if not self._is_valid(record):
            return None

        self._memory.put(key, record.artifact_text)
        logger.info("DocumentCache | hit kind=%s source=%s", self.kind, source_id)
        return record.artifact_text

    def _is_valid(self, record: CacheEntryRecord) -> bool:
        if record.artifact_kind != self.kind:
            logger.warning("DocumentCache | kind mismatch key=%s stored=%s", record.cache_key, record.artifact_kind)
            return False
        if not isinstance(record.artifact_text, str) or not record.artifact_text:
            logger.warning("DocumentCache | empty artifact key=%s, treating as miss", record.cache_key)
            return False
        try:
            CacheEntryMetadata.model_validate(record.entry_metadata)
        except ValidationError as exc:
            logger.warning(
                "DocumentCache | malformed metadata key=%s, treating as miss: %s",
                record.cache_key, exc.errors()[0]["msg"] if exc.errors() else exc,
            )
            return False
        return True

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    async def set_cached(
        self,
        source_id:     str,
        artifact_text: str,
        metadata:      CacheEntryMetadata | dict[str, Any],
    ) -> None:
        """Create or overwrite the entry for ``source_id``."""
        meta = (
            metadata if isinstance(metadata, CacheEntryMetadata)
            else CacheEntryMetadata.model_validate(metadata)
        )
        key = self.key_for(source_id)
        record = CacheEntryRecord(
            cache_key=key,
            artifact_kind=self.kind,
            source_id=normalize_source_id(source_id),
            artifact_text=artifact_text,
            entry_metadata=meta.model_dump(),
            created_at=_now_ms(),
        )

        async with self._session_factory() as session:
            async with session.begin():
                await session.merge(record)
                await session.flush()
                evicted = await self._enforce_limits(session, keep_key=key)

        for old_key in evicted:
            self._memory.pop(old_key)
        self._memory.put(key, artifact_text)
        logger.info(
            "DocumentCache | stored kind=%s source=%s strategy=%s chars=%d evicted=%d",
            self.kind, source_id, meta.processing_strategy, len(artifact_text), len(evicted),
        )

    async def _enforce_limits(self, session: AsyncSession, keep_key: str) -> list[str]:
        """Expired rows first, then the oldest; returns the evicted keys."""
        count = await self._count(session)
        if count <= self.max_entries:
            return []

        cutoff = _now_ms() - int(self.ttl_days * _MS_PER_DAY)
        expired = list((await session.execute(
            select(CacheEntryRecord.cache_key).where(
                CacheEntryRecord.artifact_kind == self.kind,
                CacheEntryRecord.created_at < cutoff,
                CacheEntryRecord.cache_key != keep_key,
            )
        )).scalars())
        if expired:
            await session.execute(delete(CacheEntryRecord).where(CacheEntryRecord.cache_key.in_(expired)))
            count -= len(expired)

        oldest: list[str] = []
        if count > self.max_entries:
            oldest = list((await session.execute(
                select(CacheEntryRecord.cache_key)
                .where(
                    CacheEntryRecord.artifact_kind == self.kind,
                    CacheEntryRecord.cache_key != keep_key,
                )
                .order_by(CacheEntryRecord.created_at.asc(), CacheEntryRecord.cache_key.asc())
                .limit(count - self.max_entries)
            )).scalars())
            if oldest:
                await session.execute(delete(CacheEntryRecord).where(CacheEntryRecord.cache_key.in_(oldest)))

        logger.info(
            "DocumentCache | housekeeping kind=%s expired=%d oldest=%d",
            self.kind, len(expired), len(oldest),
        )
        return expired + oldest

    async def _count(self, session: AsyncSession) -> int:
        result = await session.execute(
            select(func.count()).select_from(CacheEntryRecord).where(CacheEntryRecord.artifact_kind == self.kind)
        )
        return int(result.scalar_one())

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    async def invalidate(self, source_id: str) -> bool:
        """Delete the entry for ``source_id``; True if a row existed."""
        key = self.key_for(source_id)
        self._memory.pop(key)
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(delete(CacheEntryRecord).where(CacheEntryRecord.cache_key == key))
        removed = (result.rowcount or 0) > 0
        if removed:
            logger.info("DocumentCache | invalidated kind=%s source=%s", self.kind, source_id)
        return removed

    async def clear_cache(self) -> int:
        """Delete every entry of this namespace; returns the number removed."""
        self._memory.clear()
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    delete(CacheEntryRecord).where(CacheEntryRecord.artifact_kind == self.kind)
                )
        removed = result.rowcount or 0
        logger.info("DocumentCache | cleared kind=%s removed=%d", self.kind, removed)
        return removed

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    async def get_cache_stats(self) -> CacheStats:
        async with self._session_factory() as session:
            row = (await session.execute(
                select(
                    func.count(CacheEntryRecord.cache_key),
                    func.coalesce(func.sum(func.length(CacheEntryRecord.artifact_text)), 0),
                    func.min(CacheEntryRecord.created_at),
                ).where(CacheEntryRecord.artifact_kind == self.kind)
            )).one()

        total, size_chars, oldest_ms = row
        return CacheStats(
            artifact_kind=self.kind,
            total_entries=int(total),
            total_size_kb=round(int(size_chars) / 1024, 2),
            oldest_entry=(
                datetime.fromtimestamp(oldest_ms / 1000, tz=timezone.utc) if oldest_ms is not None else None
            ),
        )
