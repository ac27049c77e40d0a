"""
Observability Tracing — LangSmith + stage timing

Traces the analysis pipeline stage by stage:
  Estimate → Chunk → Batch (×N) → Consolidate → Cache write

Backends:

  LangSmith (hosted):
    - Set LANGCHAIN_TRACING_V2=true, LANGCHAIN_API_KEY, LANGCHAIN_PROJECT
      (or DOCDIGEST_LANGSMITH_API_KEY / DOCDIGEST_LANGSMITH_PROJECT)
    - Every LangChain model call made through LangChainChatModel is traced
      automatically once the variables are set

  Logging (always on):
    - ``@traced(name, attributes=..., result_attributes=...)`` records elapsed
      time, errors and stage attributes (chunk and batch counts, degraded
      consolidation, streamed output) per stage at DEBUG
"""

from __future__ import annotations

import functools
import logging
import os
import time
from typing import Any, Callable, Coroutine, Mapping, TypeVar

from docdigest.core.config import Settings

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Coroutine[Any, Any, Any]])


def init_langsmith(settings: Settings) -> bool:
    """
    LangSmith activation is purely environment-variable-driven.
    LangChain reads these on first use; we only copy them from settings
    when the environment does not already carry them.

    Returns True when tracing is active.
    """
    if settings.langsmith_api_key and not os.environ.get("LANGCHAIN_API_KEY"):
        os.environ["LANGCHAIN_TRACING_V2"] = "true"
        os.environ["LANGCHAIN_API_KEY"]    = settings.langsmith_api_key
        os.environ["LANGCHAIN_PROJECT"]    = settings.langsmith_project
        logger.info("LangSmith tracing enabled | project=%s", settings.langsmith_project)
        return True
    if os.environ.get("LANGCHAIN_TRACING_V2") == "true":
        logger.info(
            "LangSmith tracing active (from env) | project=%s",
            os.environ.get("LANGCHAIN_PROJECT", "default"),
        )
        return True
    logger.debug("LangSmith tracing disabled (LANGCHAIN_TRACING_V2 not set)")
    return False


AttributeFn = Callable[..., Mapping[str, Any]]


def _span_attrs(fn: AttributeFn | None, *args: Any, **kwargs: Any) -> str:
    """Render attribute getters as ``key=value`` pairs; a failing getter only loses its attrs."""
    if fn is None:
        return ""
    try:
        attrs = fn(*args, **kwargs)
    except Exception as exc:
        logger.debug("trace | attribute getter failed: %s", exc)
        return ""
    return "".join(f" {key}={value}" for key, value in attrs.items())


def traced(
    name:              str | None = None,
    *,
    attributes:        AttributeFn | None = None,
    result_attributes: Callable[[Any], Mapping[str, Any]] | None = None,
) -> Callable[[F], F]:
    """
    Decorator that instruments an async function with timing, error logging
    and span attributes.

    ``attributes`` receives the call's arguments (``self`` included) and
    ``result_attributes`` the return value; both return a mapping that is
    appended to the span's log line.

    Usage::

        @traced(
            "chunk_processor.batches",
            attributes=lambda self, chunks, *_: {"chunks": len(chunks)},
            result_attributes=lambda partials: {"partials": len(partials)},
        )
        async def _process_chunks_in_batches(self, chunks, ...): ...

    Emits::

        trace | span=chunk_processor.batches elapsed_ms=812.4 ok chunks=50 partials=50
    """
    def decorator(func: F) -> F:
        span_name = name or func.__qualname__

        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            call_attrs = _span_attrs(attributes, *args, **kwargs)
            t0 = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
            except Exception as exc:
                elapsed_ms = (time.perf_counter() - t0) * 1000
                logger.debug(
                    "trace | span=%s elapsed_ms=%.1f error=%s: %s%s",
                    span_name, elapsed_ms, type(exc).__name__, exc, call_attrs,
                )
                raise
            elapsed_ms = (time.perf_counter() - t0) * 1000
            logger.debug(
                "trace | span=%s elapsed_ms=%.1f ok%s%s",
                span_name, elapsed_ms, call_attrs, _span_attrs(result_attributes, result),
            )
            return result

        return wrapper  # type: ignore[return-value]
    return decorator
