"""
Source Watcher — invalidates cached artifacts when a local source changes

  watch_file(path)  ──▶  registration {path, snapshot(mtime_ns, size)}
                              │
        poll task (every poll_interval seconds, stat via to_thread)
                              │
            ┌─────────────────┼──────────────────┐
         unchanged         changed            missing
            │                 │                  │
          (keep)        handle_change()    handle_delete()
                              └────────┬─────────┘
                     invalidate in every attached cache,
                     notify the user, drop the registration

A source is watched at most once. Remote (http/https) sources are never
watched. One watcher serves every artifact kind of a session; the poll
task runs only while something is registered.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Callable, Iterable

from docdigest.cache.document_cache import DocumentCache, is_remote_source, normalize_source_id
from docdigest.core.config import settings

logger = logging.getLogger(__name__)

NotifyCallback = Callable[[str], None]


@dataclass(frozen=True)
class FileSnapshot:
    mtime_ns: int
    size:     int


@dataclass
class WatchRegistration:
    source_id: str
    snapshot:  FileSnapshot
    active:    bool = True


def stat_snapshot(path: str) -> FileSnapshot | None:
    """mtime/size of ``path``, or None when it no longer exists."""
    try:
        stat = os.stat(path)
    except FileNotFoundError:
        return None
    except OSError as exc:
        logger.warning("SourceWatcher | stat failed path=%s: %s", path, exc)
        return None
    return FileSnapshot(mtime_ns=stat.st_mtime_ns, size=stat.st_size)


class SourceWatcher:

    def __init__(
        self,
        caches:        Iterable[DocumentCache],
        *,
        poll_interval: float | None = None,
        notify:        NotifyCallback | None = None,
    ) -> None:
        self._caches        = list(caches)
        self._poll_interval = poll_interval if poll_interval is not None else settings.watcher_poll_interval_seconds
        self._notify        = notify
        self._registrations: dict[str, WatchRegistration] = {}
        self._task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    async def watch_file(self, source_id: str) -> bool:
        """
        Start watching a local source. Idempotent per normalized path.

        Returns True if the source is (now) watched.
        """
        if is_remote_source(source_id):
            logger.debug("SourceWatcher | skipping remote source=%s", source_id)
            return False

        path = normalize_source_id(source_id)
        if path in self._registrations:
            return True

        snapshot = await asyncio.to_thread(stat_snapshot, path)
        if snapshot is None:
            logger.warning("SourceWatcher | cannot watch missing file path=%s", path)
            return False
        # a concurrent watch_file may have registered while we were stat-ing
        if path in self._registrations:
            return True

        self._registrations[path] = WatchRegistration(source_id=path, snapshot=snapshot)
        self._ensure_polling()
        logger.info("SourceWatcher | watching path=%s", path)
        return True

    def unwatch_file(self, source_id: str) -> bool:
        registration = self._registrations.pop(normalize_source_id(source_id), None)
        if registration is None:
            return False
        registration.active = False
        logger.info("SourceWatcher | unwatched path=%s", registration.source_id)
        return True

    def watched_files(self) -> list[str]:
        return list(self._registrations)

    async def dispose(self) -> None:
        """Stop polling and drop every registration."""
        for registration in self._registrations.values():
            registration.active = False
        self._registrations.clear()

        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("SourceWatcher | disposed")

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def handle_change(self, source_id: str) -> None:
        path = normalize_source_id(source_id)
        if await self._invalidate(path):
            self._send(
                f"📝 {os.path.basename(path)} has changed. "
                "Cached analysis cleared and will be regenerated on next request."
            )

    async def handle_delete(self, source_id: str) -> None:
        path = normalize_source_id(source_id)
        if await self._invalidate(path):
            self._send(f"🗑️ {os.path.basename(path)} was deleted. Cached analysis cleared.")

    async def _invalidate(self, path: str) -> bool:
        """Invalidate ``path`` in every cache and drop its registration."""
        was_watched = self.unwatch_file(path)
        removed = False
        for cache in self._caches:
            removed = await cache.invalidate(path) or removed
        logger.info("SourceWatcher | invalidated path=%s watched=%s removed=%s", path, was_watched, removed)
        return was_watched or removed

    def _send(self, message: str) -> None:
        if self._notify is None:
            return
        try:
            self._notify(message)
        except Exception as exc:
            logger.warning("SourceWatcher | notify callback raised %s: %s", type(exc).__name__, exc)

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    async def poll_once(self) -> None:
        """Compare every registration against a fresh stat snapshot."""
        for path, registration in list(self._registrations.items()):
            if not registration.active:
                continue
            current = await asyncio.to_thread(stat_snapshot, path)
            if current is None:
                await self.handle_delete(path)
            elif current != registration.snapshot:
                await self.handle_change(path)

    def _ensure_polling(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._run(), name="docdigest-source-watcher")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._poll_interval)
            if not self._registrations:
                break
            try:
                await self.poll_once()
            except Exception as exc:
                logger.error("SourceWatcher | poll failed: %s", exc, exc_info=True)
