"""
Document Cache — Pydantic Schemas

Design decisions:
  - Metadata is validated on read; a row whose JSON fails validation is
    treated as a cache miss, never as an error.
  - oldest_entry is a timezone-aware UTC datetime (None for an empty cache).
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


class CacheEntryMetadata(BaseModel):
    processing_strategy: Literal["enhanced", "fallback"]
    text_length:         int = Field(..., ge=0)


class CacheStats(BaseModel):
    """Per-namespace usage, as reported by the cache-stats command."""
    artifact_kind: str
    total_entries: int   = Field(..., ge=0)
    total_size_kb: float = Field(..., ge=0)
    oldest_entry:  datetime | None = None

    def render(self) -> str:
        oldest = self.oldest_entry.strftime("%Y-%m-%d %H:%M UTC") if self.oldest_entry else "n/a"
        return (
            f"**{self.artifact_kind}**: {self.total_entries} entries, "
            f"{self.total_size_kb:.1f} KB, oldest {oldest}"
        )
