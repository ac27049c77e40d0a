"""
Root conftest.py — Shared fixtures for ALL tests (unit + integration)

Fixture hierarchy:
  function-scoped : progress, cancel_event, make_model, cache_engine,
                    session_factory, summary_cache, graph_cache, test_settings

Environment strategy:
  - No test talks to a real model: ScriptedModel implements the ChatModel
    protocol and answers from a per-test responder.
  - Every cache test gets its own SQLite file under tmp_path.
  - Retry back-off is zero and the watcher polls fast so tests stay quick.

How to run:
  pytest                                   # all tests
  pytest -m unit                           # unit tests only
  pytest -m integration                    # end-to-end pipeline scenarios
  pytest backend/tests/unit/test_chunking.py
"""

from __future__ import annotations

import asyncio
import os
from typing import AsyncGenerator, Callable

import pytest
import pytest_asyncio

# ─────────────────────────────────────────────────────────────────────────────
# Patch settings BEFORE any docdigest imports so modules read test config
# ─────────────────────────────────────────────────────────────────────────────

os.environ.setdefault("DOCDIGEST_CACHE_DATABASE_URL",            "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("DOCDIGEST_RETRY_BACKOFF_SECONDS",         "0")
os.environ.setdefault("DOCDIGEST_WATCHER_POLL_INTERVAL_SECONDS", "0.05")
os.environ.setdefault("DOCDIGEST_MODEL_REQUEST_TIMEOUT_SECONDS", "5")
os.environ.setdefault("DOCDIGEST_OPENAI_API_KEY",                "sk-test-key")
os.environ.setdefault("DOCDIGEST_LANGSMITH_API_KEY",             "")

from docdigest.core.config import Settings  # noqa: E402
from docdigest.core.errors import TransientModelError  # noqa: E402
from docdigest.db.session import (  # noqa: E402
    create_cache_engine,
    create_session_factory,
    init_cache_schema,
)

Responder = Callable[[str], "str | BaseException"]


# ─────────────────────────────────────────────────────────────────────────────
# Scripted chat model
# ─────────────────────────────────────────────────────────────────────────────

def default_responder(prompt: str) -> str:
    """Recognise the pipeline stage from its prompt and answer accordingly."""
    if prompt.startswith("Summarize this section"):
        return "Partial summary of the section."
    if prompt.startswith("Create a comprehensive final summary"):
        return "FINAL SUMMARY"
    if prompt.startswith("Summarize this document"):
        return "SINGLE PASS SUMMARY"
    if prompt.startswith("Provide a brief summary of this document excerpt"):
        return "EXCERPT SUMMARY"
    if prompt.startswith("Create Mermaid mindmap branches"):
        return "```mermaid\nTopic\n  Detail\n```"
    if prompt.startswith(("Create a unified Mermaid mindmap", "Create a Mermaid mindmap", "Create a simple Mermaid")):
        return "```mermaid\nmindmap\n  root((Doc))\n    Topic\n```"
    return "UNEXPECTED PROMPT"


class ScriptedModel:
    """
    ChatModel test double.

    Each stream() call records its prompt, asks the responder for a reply
    and yields it in two fragments. A reply that is an exception is raised
    instead. ``max_active`` records the peak number of concurrent calls.
    """

    def __init__(
        self,
        responder:        Responder = default_responder,
        *,
        name:             str = "scripted-model",
        max_input_tokens: int | None = 8192,
        delay:            float = 0.0,
    ) -> None:
        self.name             = name
        self.max_input_tokens = max_input_tokens
        self.calls: list[str] = []
        self.active     = 0
        self.max_active = 0
        self._responder = responder
        self._delay     = delay

    async def stream(self, messages, cancel=None):
        prompt = messages[-1].content
        self.calls.append(prompt)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self._delay)
            reply = self._responder(prompt)
            if isinstance(reply, BaseException):
                raise reply
            half = len(reply) // 2
            for fragment in (reply[:half], reply[half:]):
                if fragment:
                    yield fragment
                    await asyncio.sleep(0)
        finally:
            self.active -= 1

    def calls_starting_with(self, prefix: str) -> list[str]:
        return [c for c in self.calls if c.startswith(prefix)]


class MidStreamFailureModel:
    """
    ChatModel test double whose first call streams ``head`` and then drops
    with a transient error; later calls stream ``head`` + ``tail`` in full.
    """

    def __init__(self, head: str, tail: str, *, max_input_tokens: int | None = 8192) -> None:
        self.name             = "flaky-model"
        self.max_input_tokens = max_input_tokens
        self.calls = 0
        self._head = head
        self._tail = tail

    async def stream(self, messages, cancel=None):
        self.calls += 1
        yield self._head
        if self.calls == 1:
            raise TransientModelError("connection reset mid-stream")
        yield self._tail


@pytest.fixture
def make_model():
    """
    Factory fixture for ScriptedModel.

    Usage:
        model = make_model()
        model = make_model(responder=lambda p: RuntimeError("boom"))
        model = make_model(max_input_tokens=1750)
    """
    def _build(responder: Responder = default_responder, **kwargs) -> ScriptedModel:
        return ScriptedModel(responder, **kwargs)
    return _build


# ─────────────────────────────────────────────────────────────────────────────
# Progress sink and cancellation
# ─────────────────────────────────────────────────────────────────────────────

class ProgressRecorder:
    def __init__(self) -> None:
        self.lines: list[str] = []

    def __call__(self, line: str) -> None:
        self.lines.append(line)

    @property
    def text(self) -> str:
        return "".join(self.lines)


@pytest.fixture
def progress() -> ProgressRecorder:
    return ProgressRecorder()


@pytest.fixture
def cancel_event() -> asyncio.Event:
    return asyncio.Event()


# ─────────────────────────────────────────────────────────────────────────────
# SQLite cache
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def cache_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'cache.db'}"


@pytest_asyncio.fixture
async def cache_engine(cache_url) -> AsyncGenerator:
    engine = create_cache_engine(cache_url)
    await init_cache_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(cache_engine):
    return create_session_factory(cache_engine)


@pytest.fixture
def summary_cache(session_factory):
    from docdigest.cache.document_cache import DocumentCache
    return DocumentCache(session_factory, "summary", max_entries=100, ttl_days=7, memory_capacity=8)


@pytest.fixture
def graph_cache(session_factory):
    from docdigest.cache.document_cache import DocumentCache
    return DocumentCache(session_factory, "outline_graph", max_entries=100, ttl_days=7, memory_capacity=8)


@pytest.fixture
def source_file(tmp_path):
    """A real local file so the watcher has something to stat."""
    path = tmp_path / "report.txt"
    path.write_text("original contents", encoding="utf-8")
    return path


@pytest.fixture
def test_settings(cache_url) -> Settings:
    return Settings(
        cache_database_url=cache_url,
        retry_backoff_seconds=0,
        watcher_poll_interval_seconds=0.05,
        model_request_timeout_seconds=5,
        langsmith_api_key="",
    )
