"""
Document Analysis Service

Orchestrates one analysis request:
  1. Look up the artifact in the cache namespace for the requested kind
  2. On a hit, replay it to the progress sink, make sure the source is
     watched (the entry may come from an earlier session) and return
  3. Join an identical in-flight run if one exists (single-flight per
     (kind, source)); otherwise start one
  4. Run the chunk processor with the kind's strategy
  5. On success, cache the artifact with its metadata and start watching
     the source so an edit invalidates it
  6. Return an AnalysisResult

Invariants enforced here:
  - A cancelled or empty run writes nothing to the cache.
  - TerminalProcessingError is the only exception that reaches callers;
    a user-facing line is written to the sink before it propagates.
  - A joiner whose own cancel signal is not set re-runs when the shared
    run was cancelled by its owner.
  - A joiner whose own cancel signal fires stops waiting at once; the
    shared run carries on for its owner.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Literal, Mapping

from sqlalchemy.exc import SQLAlchemyError

from docdigest.cache.document_cache import DocumentCache, normalize_source_id
from docdigest.cache.watcher import SourceWatcher
from docdigest.core.errors import TerminalProcessingError, user_message
from docdigest.llm.gateway import ChatModel
from docdigest.processing.processor import ChunkProcessor
from docdigest.processing.results import Completed
from docdigest.processing.strategies import ArtifactKind, get_strategy
from docdigest.schemas.cache import CacheEntryMetadata, CacheStats

logger = logging.getLogger(__name__)

AnalysisStatus = Literal["completed", "cached", "cancelled", "empty"]
ProgressCallback = Callable[[str], None]


@dataclass(frozen=True)
class AnalysisResult:
    kind:          ArtifactKind
    status:        AnalysisStatus
    artifact_text: str | None = None
    strategy_used: Literal["cached", "enhanced", "fallback"] | None = None
    text_length:   int  = 0
    chunk_count:   int  = 0
    degraded:      bool = False

    @property
    def cached(self) -> bool:
        return self.status == "cached"


def _emit(progress_cb: ProgressCallback | None, line: str) -> None:
    if progress_cb is None:
        return
    try:
        progress_cb(line)
    except Exception as exc:
        logger.warning("DocumentAnalysisService | progress sink raised %s: %s", type(exc).__name__, exc)


def _label(kind: ArtifactKind) -> str:
    return kind.value.replace("_", " ")


class DocumentAnalysisService:
    """
    Cache → process → cache/watch, per artifact kind.

    One instance per host session; see runtime.open_session().
    """

    def __init__(
        self,
        caches:    Mapping[ArtifactKind, DocumentCache],
        watcher:   SourceWatcher,
        processor: ChunkProcessor,
    ) -> None:
        self._caches    = dict(caches)
        self._watcher   = watcher
        self._processor = processor
        self._inflight: dict[tuple[ArtifactKind, str], asyncio.Task[AnalysisResult]] = {}

    def cache_for(self, kind: ArtifactKind | str) -> DocumentCache:
        return self._caches[ArtifactKind(kind)]

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def analyze(
        self,
        source_id:    str,
        text:         str,
        display_name: str,
        model:        ChatModel,
        kind:         ArtifactKind | str = ArtifactKind.SUMMARY,
        *,
        cancel:       asyncio.Event | None = None,
        progress_cb:  ProgressCallback | None = None,
    ) -> AnalysisResult:
        """
        Produce (or fetch) the artifact of ``kind`` for ``source_id``.

        Raises:
            TerminalProcessingError: every processing tier failed.
        """
        kind   = ArtifactKind(kind)
        cache  = self.cache_for(kind)
        cancel = cancel if cancel is not None else asyncio.Event()
        key    = (kind, normalize_source_id(source_id))

        while True:
            shared = self._inflight.get(key)
            if shared is not None:
                logger.info("DocumentAnalysisService | joining in-flight run kind=%s source=%s", kind.value, key[1])
                _emit(progress_cb, f"⏳ A {_label(kind)} for {display_name} is already being generated, waiting...\n\n")
                result = await self._join(shared, cancel)
                if result is None:
                    # own signal fired first; the shared run keeps going for its owner
                    logger.info("DocumentAnalysisService | joiner cancelled kind=%s source=%s", kind.value, key[1])
                    _emit(progress_cb, "⏹️ Processing cancelled.\n\n")
                    return AnalysisResult(kind=kind, status="cancelled", text_length=len(text))
                if result.status == "cancelled" and not cancel.is_set():
                    logger.info("DocumentAnalysisService | shared run was cancelled, re-running source=%s", key[1])
                    continue
                if result.artifact_text and not cancel.is_set():
                    _emit(progress_cb, result.artifact_text)
                return result

            cached = await cache.get_cached(source_id)
            if cached is not None:
                _emit(progress_cb, f"⚡ Found cached {_label(kind)}! (Generated previously)\n\n")
                _emit(progress_cb, cached)
                # entries restored from an earlier session have no watch yet
                await self._watcher.watch_file(source_id)
                return AnalysisResult(
                    kind=kind,
                    status="cached",
                    artifact_text=cached,
                    strategy_used="cached",
                    text_length=len(text),
                )
            if key not in self._inflight:
                break

        task = asyncio.ensure_future(
            self._run(key, source_id, text, display_name, model, kind, cancel, progress_cb)
        )
        self._inflight[key] = task
        return await asyncio.shield(task)

    @staticmethod
    async def _join(
        shared: asyncio.Task[AnalysisResult],
        cancel: asyncio.Event,
    ) -> AnalysisResult | None:
        """Wait for ``shared`` unless ``cancel`` fires first (then None)."""
        if cancel.is_set():
            return None
        waiter = asyncio.ensure_future(cancel.wait())
        try:
            done, _ = await asyncio.wait({shared, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
        if shared not in done:
            return None
        return shared.result()

    async def cache_stats(self) -> list[CacheStats]:
        return [await cache.get_cache_stats() for cache in self._caches.values()]

    async def cache_report(self) -> str:
        """Markdown report behind the cache-stats command."""
        stats = await self.cache_stats()
        lines = ["📊 **Cache statistics**", ""]
        lines += [f"- {entry.render()}" for entry in stats]
        return "\n".join(lines) + "\n"

    async def clear_all(self) -> int:
        """Clear every namespace; returns the number of entries removed."""
        removed = 0
        for cache in self._caches.values():
            removed += await cache.clear_cache()
        logger.info("DocumentAnalysisService | cleared all caches removed=%d", removed)
        return removed

    # ------------------------------------------------------------------
    # One run
    # ------------------------------------------------------------------

    async def _run(
        self,
        key:          tuple[ArtifactKind, str],
        source_id:    str,
        text:         str,
        display_name: str,
        model:        ChatModel,
        kind:         ArtifactKind,
        cancel:       asyncio.Event,
        progress_cb:  ProgressCallback | None,
    ) -> AnalysisResult:
        try:
            try:
                outcome = await self._processor.process(
                    text, display_name, model, progress_cb, cancel, get_strategy(kind),
                )
            except TerminalProcessingError as exc:
                _emit(progress_cb, user_message(exc, "Document analysis"))
                logger.error("DocumentAnalysisService | failed kind=%s source=%s: %s", kind.value, key[1], exc)
                raise

            if outcome.kind == "empty":
                return AnalysisResult(kind=kind, status="empty")
            if outcome.kind == "cancelled" or cancel.is_set():
                _emit(progress_cb, "⏹️ Processing cancelled.\n\n")
                logger.info("DocumentAnalysisService | cancelled kind=%s source=%s", kind.value, key[1])
                return AnalysisResult(kind=kind, status="cancelled", text_length=len(text))

            return await self._complete(source_id, kind, outcome, progress_cb)
        finally:
            if self._inflight.get(key) is asyncio.current_task():
                del self._inflight[key]

    async def _complete(
        self,
        source_id:   str,
        kind:        ArtifactKind,
        outcome:     Completed,
        progress_cb: ProgressCallback | None,
    ) -> AnalysisResult:
        if not outcome.streamed:
            _emit(progress_cb, outcome.artifact_text)

        metadata = CacheEntryMetadata(
            processing_strategy=outcome.strategy_used,
            text_length=outcome.text_length,
        )
        try:
            await self.cache_for(kind).set_cached(source_id, outcome.artifact_text, metadata)
            await self._watcher.watch_file(source_id)
        except SQLAlchemyError as exc:
            # the artifact is still returned; only persistence is lost
            logger.error("DocumentAnalysisService | cache write failed source=%s: %s", source_id, exc)

        logger.info(
            "DocumentAnalysisService | completed kind=%s source=%s strategy=%s chunks=%d degraded=%s",
            kind.value, source_id, outcome.strategy_used, outcome.chunk_count, outcome.degraded,
        )
        return AnalysisResult(
            kind=kind,
            status="completed",
            artifact_text=outcome.artifact_text,
            strategy_used=outcome.strategy_used,
            text_length=outcome.text_length,
            chunk_count=outcome.chunk_count,
            degraded=outcome.degraded,
        )
