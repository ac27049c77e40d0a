"""
Session runtime — wiring for one host session

open_session() builds, in order:
  1. the cache engine + schema (SQLite through aiosqlite)
  2. one DocumentCache per artifact kind over a shared session factory
  3. one SourceWatcher attached to every cache
  4. one ChunkProcessor and the DocumentAnalysisService on top

Nothing here is global: hosts open a session on activation and close it on
deactivation, which disposes the watcher and the engine.

Usage::

    async with open_session() as session:
        result = await session.service.analyze(
            "/docs/report.pdf", text, "report.pdf", build_default_model(),
            ArtifactKind.SUMMARY, progress_cb=print,
        )
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Callable

from sqlalchemy.ext.asyncio import AsyncEngine

from docdigest.cache.document_cache import DocumentCache
from docdigest.cache.watcher import SourceWatcher
from docdigest.core.config import Settings, get_settings
from docdigest.core.errors import ConfigurationError
from docdigest.db.session import (
    check_cache_health,
    create_cache_engine,
    create_session_factory,
    init_cache_schema,
)
from docdigest.observability.tracing import init_langsmith
from docdigest.processing.processor import ChunkProcessor
from docdigest.processing.strategies import ArtifactKind
from docdigest.services.analysis import DocumentAnalysisService

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    level = logging.DEBUG if settings.debug else getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


@dataclass
class AnalysisSession:
    settings:  Settings
    engine:    AsyncEngine
    caches:    dict[ArtifactKind, DocumentCache]
    watcher:   SourceWatcher
    processor: ChunkProcessor
    service:   DocumentAnalysisService


@asynccontextmanager
async def open_session(
    settings: Settings | None = None,
    *,
    notify:   Callable[[str], None] | None = None,
) -> AsyncIterator[AnalysisSession]:
    """
    Build every collaborator for one host session and tear them down on exit.

    Raises:
        ConfigurationError: if the cache database is unreachable.
    """
    cfg = settings or get_settings()
    init_langsmith(cfg)

    engine = create_cache_engine(cfg.cache_database_url, echo=cfg.cache_echo_sql)
    try:
        await init_cache_schema(engine)
        health = await check_cache_health(engine)
        if health["status"] != "ok":
            raise ConfigurationError(f"Cache database unavailable: {health.get('detail')}", health)

        session_factory = create_session_factory(engine)
        caches = {
            kind: DocumentCache(
                session_factory,
                kind.value,
                max_entries=cfg.cache_max_entries,
                ttl_days=cfg.cache_ttl_days,
                memory_capacity=cfg.cache_memory_capacity,
            )
            for kind in ArtifactKind
        }
        watcher   = SourceWatcher(caches.values(), poll_interval=cfg.watcher_poll_interval_seconds, notify=notify)
        processor = ChunkProcessor(
            cfg.default_batch_size,
            request_timeout=cfg.model_request_timeout_seconds,
            max_attempts=cfg.retry_max_attempts,
            backoff_seconds=cfg.retry_backoff_seconds,
            excerpt_chars=cfg.fallback_excerpt_chars,
        )
        service = DocumentAnalysisService(caches, watcher, processor)

        logger.info(
            "Session opened | kinds=%s batch_size=%d max_entries=%d",
            ",".join(k.value for k in caches), processor.batch_size, cfg.cache_max_entries,
        )
        session = AnalysisSession(
            settings=cfg,
            engine=engine,
            caches=caches,
            watcher=watcher,
            processor=processor,
            service=service,
        )
        try:
            yield session
        finally:
            await watcher.dispose()
    finally:
        await engine.dispose()
        logger.info("Session closed")
