"""
Integration Tests — Analysis pipeline end to end
═════════════════════════════════════════════════
Real SQLite cache, real watcher, real processor; only the model is scripted.
Every test opens a full session through runtime.open_session().

Coverage targets:
  ✅ A: 500 chars, 8192-token ceiling → single pass, one call, cached (summary)
  ✅ B: 50,000 chars, 1,000-token budget → many chunks, batches of 3,
        exactly one consolidation call
  ✅ C: chunk refused by content policy → placeholder, run completes + caches
  ✅ D: cancel mid-batch → "cancelled", nothing cached
  ✅ E: cached summary only → outline-graph request misses and reprocesses
  ✅ Second request served from cache without model calls
  ✅ Source edit → watcher invalidates → next request reprocesses
  ✅ Terminal failure → user-facing line + TerminalProcessingError, no cache
  ✅ Single-flight: concurrent identical requests share one run
  ✅ Joiner whose own cancel fires stops waiting; the shared run still completes
  ✅ Interrupted single-pass stream → clean artifact emitted once after the retry
  ✅ Entry restored in a new session is watched; an edit then invalidates it
  ✅ cache_stats / cache_report / clear_all across namespaces
"""

from __future__ import annotations

import asyncio
import logging
from unittest.mock import patch

import pytest

from docdigest.core.errors import ContentPolicyRejection, TerminalProcessingError, TransientModelError
from docdigest.db.session import create_session_factory
from docdigest.models.cache import CacheEntryRecord
from docdigest.processing.strategies import ArtifactKind
from docdigest.runtime import configure_logging, open_session
from tests.conftest import MidStreamFailureModel, default_responder

# budget = floor((1750 - 500) * 0.8) = 1000 tokens per chunk
SCENARIO_B_CEILING = 1750


def _fifty_thousand_chars() -> str:
    paragraph = ("Findings are described in plain prose across the section. " * 9)[:498] + "\n\n"
    pages: list[str] = []
    length = 0
    page = 1
    while length < 50_000:
        block = f"--- Page {page} ---\n" + paragraph * 3
        pages.append(block)
        length += len(block)
        page += 1
    return "".join(pages)[:50_000]


async def _started(model, timeout: float = 2.0) -> None:
    """Wait until the owner run has reached the model, i.e. is registered in flight."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not model.calls:
        assert asyncio.get_running_loop().time() < deadline, "owner run never reached the model"
        await asyncio.sleep(0.005)


@pytest.fixture
async def session(test_settings):
    async with open_session(test_settings) as s:
        yield s


# ─────────────────────────────────────────────────────────────────────────────
# Scenarios A–E
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestScenarios:

    async def test_a_single_pass_cached(self, session, make_model, progress, source_file):
        model = make_model(max_input_tokens=8192)
        text = "Plain text. " * 41 + "The end."   # 500 chars

        result = await session.service.analyze(str(source_file), text, "report.txt", model, progress_cb=progress)

        assert len(text) == 500
        assert result.status == "completed"
        assert result.strategy_used == "enhanced"
        assert result.chunk_count == 0
        assert len(model.calls) == 1
        assert await session.caches[ArtifactKind.SUMMARY].get_cached(str(source_file)) == "SINGLE PASS SUMMARY"
        assert await session.caches[ArtifactKind.OUTLINE_GRAPH].get_cached(str(source_file)) is None
        assert session.watcher.watched_files() == [str(source_file)]

    async def test_b_chunked_batches_and_one_consolidation(self, session, make_model, progress, source_file):
        model = make_model(max_input_tokens=SCENARIO_B_CEILING, delay=0.005)
        text = _fifty_thousand_chars()

        result = await session.service.analyze(str(source_file), text, "big.txt", model, progress_cb=progress)

        assert result.status == "completed"
        assert result.artifact_text == "FINAL SUMMARY"
        assert result.chunk_count > 3
        assert len(model.calls_starting_with("Summarize this section")) == result.chunk_count
        assert len(model.calls_starting_with("Create a comprehensive final summary")) == 1
        assert model.max_active <= 3
        batch_lines = [line for line in progress.lines if line.startswith("📄 Processing pages")]
        assert len(batch_lines) == -(-result.chunk_count // 3)
        # the artifact reaches the sink once, after processing
        assert progress.lines[-1] == "FINAL SUMMARY"

    async def test_c_refused_chunk_placeholder(self, session, make_model, source_file):
        def responder(prompt):
            if "(Chunk 1)" in prompt:
                return ContentPolicyRejection("AI model (scripted-model) rejected the content.")
            return default_responder(prompt)

        model = make_model(responder, max_input_tokens=SCENARIO_B_CEILING)
        result = await session.service.analyze(str(source_file), _fifty_thousand_chars(), "big.txt", model)

        assert result.status == "completed"
        consolidation = model.calls_starting_with("Create a comprehensive final summary")[0]
        assert "## Section 1\n[Error summarizing pages 1-" in consolidation
        assert await session.caches[ArtifactKind.SUMMARY].get_cached(str(source_file)) == "FINAL SUMMARY"

    async def test_d_cancel_mid_batch(self, session, make_model, cancel_event, progress, source_file):
        def responder(prompt):
            if "(Chunk 2)" in prompt:
                cancel_event.set()
            return default_responder(prompt)

        model = make_model(responder, max_input_tokens=SCENARIO_B_CEILING)
        result = await session.service.analyze(
            str(source_file), _fifty_thousand_chars(), "big.txt", model,
            cancel=cancel_event, progress_cb=progress,
        )

        assert result.status == "cancelled"
        assert result.artifact_text is None
        assert await session.caches[ArtifactKind.SUMMARY].get_cached(str(source_file)) is None
        assert session.watcher.watched_files() == []
        assert "Processing cancelled" in progress.text

    async def test_d_cancel_does_not_touch_existing_entry(self, session, make_model, cancel_event, source_file):
        cache = session.caches[ArtifactKind.OUTLINE_GRAPH]
        summary_cache = session.caches[ArtifactKind.SUMMARY]
        await summary_cache.set_cached(str(source_file), "old summary", {"processing_strategy": "enhanced", "text_length": 1})
        cancel_event.set()

        result = await session.service.analyze(
            str(source_file), "text", "a.txt", make_model(), ArtifactKind.OUTLINE_GRAPH, cancel=cancel_event,
        )

        assert result.status == "cancelled"
        assert await cache.get_cached(str(source_file)) is None
        assert await summary_cache.get_cached(str(source_file)) == "old summary"

    async def test_e_graph_misses_when_only_summary_cached(self, session, make_model, source_file):
        model = make_model()
        await session.service.analyze(str(source_file), "Some text.", "a.txt", model, ArtifactKind.SUMMARY)
        assert len(model.calls) == 1

        result = await session.service.analyze(str(source_file), "Some text.", "a.txt", model, "outline_graph")

        assert result.status == "completed"
        assert result.kind is ArtifactKind.OUTLINE_GRAPH
        assert len(model.calls) == 2
        assert model.calls[1].startswith("Create a Mermaid mindmap")
        assert result.artifact_text == "mindmap\n  root((Doc))\n    Topic"


# ─────────────────────────────────────────────────────────────────────────────
# Cache lifecycle
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestCacheLifecycle:

    async def test_second_request_served_from_cache(self, session, make_model, progress, source_file):
        model = make_model()
        await session.service.analyze(str(source_file), "Some text.", "a.txt", model)

        result = await session.service.analyze(str(source_file), "Some text.", "a.txt", model, progress_cb=progress)

        assert result.cached is True
        assert result.strategy_used == "cached"
        assert result.artifact_text == "SINGLE PASS SUMMARY"
        assert len(model.calls) == 1
        assert "Found cached summary" in progress.text

    async def test_interrupted_stream_emits_clean_artifact(self, session, progress, source_file):
        model = MidStreamFailureModel("PARTIAL-", "DONE")

        result = await session.service.analyze(str(source_file), "Some text.", "a.txt", model, progress_cb=progress)

        assert result.artifact_text == "PARTIAL-DONE"
        assert model.calls == 2
        assert progress.lines[-1] == "PARTIAL-DONE"
        assert progress.text.count("PARTIAL-DONE") == 1
        assert progress.text.count("PARTIAL-") == 2   # broken attempt + clean artifact
        assert await session.caches[ArtifactKind.SUMMARY].get_cached(str(source_file)) == "PARTIAL-DONE"

    async def test_source_edit_triggers_reprocessing(self, session, make_model, source_file):
        model = make_model()
        await session.service.analyze(str(source_file), "Some text.", "a.txt", model)

        await session.watcher.handle_change(str(source_file))
        result = await session.service.analyze(str(source_file), "Some text.", "a.txt", model)

        assert result.status == "completed"
        assert len(model.calls) == 2

    async def test_remote_source_cached_but_not_watched(self, session, make_model):
        url = "https://example.com/paper.pdf"
        await session.service.analyze(url, "Some text.", "paper.pdf", make_model())
        assert await session.caches[ArtifactKind.SUMMARY].get_cached(url) == "SINGLE PASS SUMMARY"
        assert session.watcher.watched_files() == []

    async def test_fallback_result_metadata(self, session, make_model):
        model = make_model(lambda p: "EXCERPT SUMMARY" if p.startswith("Provide a brief") else TransientModelError("overloaded"))
        result = await session.service.analyze("/docs/x.pdf", "Some text.", "x.pdf", model)
        assert result.strategy_used == "fallback"
        cache = session.caches[ArtifactKind.SUMMARY]
        async with create_session_factory(session.engine)() as db:
            record = await db.get(CacheEntryRecord, cache.key_for("/docs/x.pdf"))
        assert record.entry_metadata == {"processing_strategy": "fallback", "text_length": 10}

    async def test_terminal_failure(self, session, make_model, progress, source_file):
        model = make_model(lambda prompt: TransientModelError("service unavailable"))
        with pytest.raises(TerminalProcessingError):
            await session.service.analyze(str(source_file), "Some text.", "a.txt", model, progress_cb=progress)
        assert "*Error Code: PROCESSING_FAILED*" in progress.text
        assert await session.caches[ArtifactKind.SUMMARY].get_cached(str(source_file)) is None

    async def test_empty_text(self, session, make_model, source_file):
        model = make_model()
        result = await session.service.analyze(str(source_file), "  ", "a.txt", model)
        assert result.status == "empty"
        assert model.calls == []

    async def test_stats_and_clear_all(self, session, make_model):
        model = make_model()
        await session.service.analyze("/docs/a.pdf", "Some text.", "a.pdf", model, ArtifactKind.SUMMARY)
        await session.service.analyze("/docs/a.pdf", "Some text.", "a.pdf", model, ArtifactKind.OUTLINE_GRAPH)

        stats = {s.artifact_kind: s for s in await session.service.cache_stats()}
        assert stats["summary"].total_entries == 1
        assert stats["outline_graph"].total_entries == 1

        report = await session.service.cache_report()
        assert "**summary**: 1 entries" in report
        assert "**outline_graph**: 1 entries" in report

        assert await session.service.clear_all() == 2
        assert all(s.total_entries == 0 for s in await session.service.cache_stats())


# ─────────────────────────────────────────────────────────────────────────────
# Single-flight
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestSingleFlight:

    async def test_concurrent_requests_share_one_run(self, session, make_model, source_file):
        model = make_model(delay=0.05)
        first, second = await asyncio.gather(
            session.service.analyze(str(source_file), "Some text.", "a.txt", model),
            session.service.analyze(str(source_file), "Some text.", "a.txt", model),
        )
        assert len(model.calls) == 1
        assert first.artifact_text == second.artifact_text == "SINGLE PASS SUMMARY"

    async def test_different_kinds_do_not_share(self, session, make_model, source_file):
        model = make_model(delay=0.05)
        await asyncio.gather(
            session.service.analyze(str(source_file), "Some text.", "a.txt", model, ArtifactKind.SUMMARY),
            session.service.analyze(str(source_file), "Some text.", "a.txt", model, ArtifactKind.OUTLINE_GRAPH),
        )
        assert len(model.calls) == 2

    async def test_joiner_reruns_when_owner_cancels(self, session, make_model, source_file):
        owner_cancel = asyncio.Event()
        model = make_model(delay=0.05)

        async def owner():
            return await session.service.analyze(
                str(source_file), "Some text.", "a.txt", model, cancel=owner_cancel,
            )

        async def joiner():
            await asyncio.sleep(0.01)
            owner_cancel.set()
            return await session.service.analyze(str(source_file), "Some text.", "a.txt", model)

        owner_result, joiner_result = await asyncio.gather(owner(), joiner())
        assert owner_result.status == "cancelled"
        assert joiner_result.status == "completed"
        assert joiner_result.artifact_text == "SINGLE PASS SUMMARY"

    async def test_joiner_cancel_stops_waiting(self, session, make_model, progress, source_file):
        joiner_cancel = asyncio.Event()
        model = make_model(delay=0.5)
        loop = asyncio.get_running_loop()

        owner = asyncio.ensure_future(
            session.service.analyze(str(source_file), "Some text.", "a.txt", model)
        )
        await _started(model)
        loop.call_later(0.02, joiner_cancel.set)

        started = loop.time()
        joiner_result = await session.service.analyze(
            str(source_file), "Some text.", "a.txt", model, cancel=joiner_cancel, progress_cb=progress,
        )
        waited = loop.time() - started

        assert joiner_result.status == "cancelled"
        assert waited < 0.4
        assert "Processing cancelled" in progress.text
        assert not owner.done()

        owner_result = await owner
        assert owner_result.status == "completed"
        assert len(model.calls) == 1
        assert await session.caches[ArtifactKind.SUMMARY].get_cached(str(source_file)) == "SINGLE PASS SUMMARY"

    async def test_joiner_with_cancel_already_set(self, session, make_model, source_file):
        cancel = asyncio.Event()
        cancel.set()
        model = make_model(delay=0.05)

        owner = asyncio.ensure_future(
            session.service.analyze(str(source_file), "Some text.", "a.txt", model)
        )
        await _started(model)
        joiner_result = await session.service.analyze(str(source_file), "Some text.", "a.txt", model, cancel=cancel)

        assert joiner_result.status == "cancelled"
        assert (await owner).status == "completed"
        assert len(model.calls) == 1


# ─────────────────────────────────────────────────────────────────────────────
# Runtime
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
async def test_session_closes_cleanly(test_settings, source_file, make_model):
    async with open_session(test_settings) as s:
        await s.service.analyze(str(source_file), "Some text.", "a.txt", make_model())
        assert s.watcher.watched_files()
        watcher = s.watcher
    assert watcher.watched_files() == []


@pytest.mark.integration
async def test_entries_survive_a_new_session(test_settings, source_file, make_model):
    async with open_session(test_settings) as s:
        await s.service.analyze(str(source_file), "Some text.", "a.txt", make_model())

    model = make_model()
    async with open_session(test_settings) as s:
        result = await s.service.analyze(str(source_file), "Some text.", "a.txt", model)
    assert result.cached
    assert model.calls == []


@pytest.mark.integration
async def test_restored_entry_is_watched_and_invalidated_on_edit(test_settings, source_file, make_model):
    async with open_session(test_settings) as s:
        await s.service.analyze(str(source_file), "Some text.", "a.txt", make_model())

    notes: list[str] = []
    model = make_model()
    async with open_session(test_settings, notify=notes.append) as s:
        hit = await s.service.analyze(str(source_file), "Some text.", "a.txt", model)
        assert hit.cached
        assert s.watcher.watched_files() == [str(source_file)]

        source_file.write_text("edited while the session is open", encoding="utf-8")
        deadline = asyncio.get_running_loop().time() + 2.0
        while not notes:
            assert asyncio.get_running_loop().time() < deadline, "edit was never detected"
            await asyncio.sleep(0.01)

        result = await s.service.analyze(str(source_file), "Edited text.", "a.txt", model)

    assert "report.txt has changed" in notes[0]
    assert result.status == "completed"
    assert len(model.calls) == 1


@pytest.mark.integration
def test_configure_logging(test_settings):
    with patch("docdigest.runtime.logging.basicConfig") as basic_config:
        configure_logging(test_settings)
    assert basic_config.call_args.kwargs["level"] == logging.INFO
    assert "%(name)s" in basic_config.call_args.kwargs["format"]
