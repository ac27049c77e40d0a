"""
Chunk Processor  —  Tiered, Token-Budgeted Document Analysis
═════════════════════════════════════════════════════════════

Tiers
─────
  1. Single pass     estimate ≤ chunk budget → one retried model call,
                     fragments streamed to the progress sink as they arrive;
                     an attempt broken mid-stream is retried silently
  2. Map-reduce      chunk → batch (concurrent within a batch, sequential
                     across batches) → consolidate (retried)
                       - a failed chunk becomes a placeholder line
                       - a failed consolidation becomes a locally assembled
                         artifact (degraded=True)
  3. Excerpt only    first ``fallback_excerpt_chars`` characters, one
                     unretried call; failure here is terminal

  ┌────────────┐  fits   ┌─────────────┐
  │  estimate  │ ──────▶ │ single pass │ ──┐
  └────────────┘         └─────────────┘   │ unrecoverable
        │ too large      ┌─────────────┐   ├──────────────▶ excerpt tier
        └──────────────▶ │ map-reduce  │ ──┘
                         └─────────────┘

Cancellation
────────────
  The cancel event is polled before and after every batch, inside every
  retry loop and per streamed fragment. Any CancellationError ends the run
  with ``Cancelled``; partial results are dropped.

The processor is variant-agnostic: prompts, result formatting and degraded
assembly all come from the injected ProcessingStrategy.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

from docdigest.core.config import settings
from docdigest.core.errors import (
    CancellationError,
    ConfigurationError,
    ContentPolicyRejection,
    DocDigestError,
    TerminalProcessingError,
    TransientModelError,
)
from docdigest.llm.gateway import ChatModel, build_messages
from docdigest.llm.retry import should_retry_model_error, with_retry
from docdigest.observability.tracing import traced
from docdigest.processing import chunking, tokens
from docdigest.processing.chunking import DocumentChunk
from docdigest.processing.results import (
    Cancelled,
    Completed,
    EnhancedOutcome,
    FallbackRequired,
    NothingToProcess,
    ProcessingOutcome,
)
from docdigest.processing.strategies import ProcessingStrategy, SummarizationStrategy

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str], None]

# Phrases that mark a model reply as a refusal rather than an answer
_REFUSAL_PHRASES = (
    "sorry, i can't assist",
    "i can't help",
    "i cannot assist",
)

EXCERPT_SUFFIX     = "...\n\n[Showing excerpt only]"
EXCERPT_NOTE       = "⚠️ *Note: Result based on document excerpt only due to size constraints.*"
RETRY_NOTE         = "⚠️ Model response was interrupted, retrying..."
PLACEHOLDER_PREFIX = "[Error summarizing pages"


def _emit(progress_cb: ProgressCallback | None, line: str) -> None:
    """Write one line to the progress sink; a failing sink never stops the run."""
    if progress_cb is None:
        return
    try:
        progress_cb(line)
    except Exception as exc:
        logger.warning("ChunkProcessor | progress sink raised %s: %s", type(exc).__name__, exc)


def _raise_if_cancelled(cancel: asyncio.Event | None) -> None:
    if cancel is not None and cancel.is_set():
        raise CancellationError()


def _reason(exc: BaseException) -> str:
    if isinstance(exc, DocDigestError):
        return exc.message
    return str(exc) or type(exc).__name__


def _check_refusal(raw: str, model_name: str) -> None:
    lowered = raw.lower()
    if any(phrase in lowered for phrase in _REFUSAL_PHRASES):
        raise ContentPolicyRejection(
            f"AI model ({model_name}) rejected the content. "
            "This may be due to content policy restrictions.",
            {"model": model_name},
        )


class ChunkProcessor:
    """
    Runs one document through the tiers described in the module docstring.

    Stateless between runs; a single instance can serve concurrent calls.
    """

    def __init__(
        self,
        batch_size:      int | None   = None,
        *,
        request_timeout: float | None = None,
        max_attempts:    int | None   = None,
        backoff_seconds: float | None = None,
        excerpt_chars:   int | None   = None,
    ) -> None:
        size = batch_size if batch_size is not None else settings.default_batch_size
        self.batch_size       = max(1, min(size, settings.max_batch_size))
        self._request_timeout = request_timeout or settings.model_request_timeout_seconds
        self._max_attempts    = max_attempts
        self._backoff_seconds = backoff_seconds
        self._excerpt_chars   = excerpt_chars if excerpt_chars is not None else settings.fallback_excerpt_chars

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def process(
        self,
        text:         str,
        display_name: str,
        model:        ChatModel,
        progress_cb:  ProgressCallback | None = None,
        cancel:       asyncio.Event | None = None,
        strategy:     ProcessingStrategy | None = None,
    ) -> ProcessingOutcome:
        """
        Produce one artifact for ``text``.

        Returns:
            Completed, Cancelled or NothingToProcess.

        Raises:
            TerminalProcessingError: when the excerpt tier fails as well.
        """
        strategy = strategy or SummarizationStrategy()

        if not text.strip():
            _emit(progress_cb, "No text content to process.\n\n")
            logger.info("ChunkProcessor | empty text file=%s", display_name)
            return NothingToProcess()

        if cancel is not None and cancel.is_set():
            return Cancelled()

        estimate = tokens.estimate_with_metadata(text)
        _emit(progress_cb, f"📊 Processing {len(text):,} characters (~{estimate.tokens:,} tokens)\n\n")
        logger.info(
            "ChunkProcessor | start file=%s kind=%s chars=%d tokens=%d confidence=%.2f model=%s",
            display_name, strategy.kind.value, len(text), estimate.tokens, estimate.confidence, model.name,
        )

        outcome = await self._process_enhanced(text, display_name, model, strategy, progress_cb, cancel)
        if not isinstance(outcome, FallbackRequired):
            return outcome

        logger.warning("ChunkProcessor | enhanced tiers failed file=%s error=%s", display_name, outcome.error)
        _emit(progress_cb, "⚠️ Enhanced processing failed, using fallback approach...\n\n")
        try:
            return await self._run_fallback_tier(text, model, strategy, progress_cb, cancel, outcome.error)
        except CancellationError:
            logger.info("ChunkProcessor | cancelled during excerpt tier file=%s", display_name)
            return Cancelled()

    # ------------------------------------------------------------------
    # Tiers 1 + 2
    # ------------------------------------------------------------------

    async def _process_enhanced(
        self,
        text:         str,
        display_name: str,
        model:        ChatModel,
        strategy:     ProcessingStrategy,
        progress_cb:  ProgressCallback | None,
        cancel:       asyncio.Event | None,
    ) -> EnhancedOutcome:
        try:
            config = chunking.get_default_config(model.max_input_tokens or settings.default_max_input_tokens)
            if tokens.estimate(text) <= config.max_tokens_per_chunk:
                _emit(progress_cb, "🚀 Document fits in single chunk, processing directly...\n\n")
                return await self._single_pass(text, display_name, model, strategy, progress_cb, cancel)

            _emit(progress_cb, "📚 Document is large, using semantic chunking...\n\n")
            return await self._process_chunked(text, display_name, model, strategy, config, progress_cb, cancel)
        except CancellationError:
            logger.info("ChunkProcessor | cancelled file=%s", display_name)
            return Cancelled()
        except Exception as exc:
            return FallbackRequired(error=_reason(exc))

    @traced(
        "chunk_processor.single_pass",
        attributes=lambda self, text, *_: {"chars": len(text)},
        result_attributes=lambda outcome: {"streamed": outcome.streamed},
    )
    async def _single_pass(
        self,
        text:         str,
        display_name: str,
        model:        ChatModel,
        strategy:     ProcessingStrategy,
        progress_cb:  ProgressCallback | None,
        cancel:       asyncio.Event | None,
    ) -> Completed:
        prompt = strategy.get_prompt("single_chunk", display_name, text)
        raw, streamed = await self._stream_with_retry(model, prompt, cancel, progress_cb)
        return Completed(
            artifact_text=strategy.format_result(raw),
            strategy_used="enhanced",
            text_length=len(text),
            streamed=streamed,
        )

    async def _process_chunked(
        self,
        text:         str,
        display_name: str,
        model:        ChatModel,
        strategy:     ProcessingStrategy,
        config:       chunking.ChunkingConfig,
        progress_cb:  ProgressCallback | None,
        cancel:       asyncio.Event | None,
    ) -> Completed:
        chunks = chunking.create_semantic_chunks(text, config)
        if not chunking.validate_chunks(chunks, config):
            raise ConfigurationError(
                "Chunk validation failed: a chunk exceeds the token budget",
                {"max_tokens_per_chunk": config.max_tokens_per_chunk, "chunks": len(chunks)},
            )

        eta = chunking.estimate_processing_time(chunks)
        _emit(progress_cb, f"🔄 Created {len(chunks)} semantic chunks (estimated {eta:.0f}s)\n\n")

        partials = await self._process_chunks_in_batches(chunks, display_name, model, strategy, progress_cb, cancel)

        _emit(progress_cb, "🔗 Consolidating section results...\n\n")
        artifact, degraded = await self._consolidate(
            partials, display_name, chunks[-1].end_page, model, strategy, progress_cb, cancel,
        )
        return Completed(
            artifact_text=artifact,
            strategy_used="enhanced",
            text_length=len(text),
            chunk_count=len(chunks),
            degraded=degraded,
        )

    @traced(
        "chunk_processor.batches",
        attributes=lambda self, chunks, *_: {
            "chunks": len(chunks),
            "batch_size": self.batch_size,
            "batches": -(-len(chunks) // self.batch_size),
        },
        result_attributes=lambda partials: {
            "placeholders": sum(p.startswith(PLACEHOLDER_PREFIX) for p in partials),
        },
    )
    async def _process_chunks_in_batches(
        self,
        chunks:       list[DocumentChunk],
        display_name: str,
        model:        ChatModel,
        strategy:     ProcessingStrategy,
        progress_cb:  ProgressCallback | None,
        cancel:       asyncio.Event | None,
    ) -> list[str]:
        """Partial results in chunk index order."""
        results: dict[int, str] = {}

        for offset in range(0, len(chunks), self.batch_size):
            _raise_if_cancelled(cancel)
            batch = chunks[offset:offset + self.batch_size]
            _emit(progress_cb, f"📄 Processing pages {batch[0].start_page}-{batch[-1].end_page}...\n\n")

            outputs = await asyncio.gather(
                *(self._summarize_chunk(chunk, display_name, model, strategy, cancel) for chunk in batch),
                return_exceptions=True,
            )
            _raise_if_cancelled(cancel)

            for chunk, output in zip(batch, outputs):
                if isinstance(output, BaseException):
                    raise output
                results[chunk.index] = output

            _emit(progress_cb, f"✅ Completed {len(results)}/{len(chunks)} chunks\n\n")
            # yield to the loop between batches
            await asyncio.sleep(0)

        return [results[chunk.index] for chunk in chunks]

    async def _summarize_chunk(
        self,
        chunk:        DocumentChunk,
        display_name: str,
        model:        ChatModel,
        strategy:     ProcessingStrategy,
        cancel:       asyncio.Event | None,
    ) -> str:
        prompt = strategy.get_prompt("chunk", chunk, display_name)
        try:
            raw = await self._call_with_retry(model, prompt, cancel)
        except CancellationError:
            raise
        except Exception as exc:
            logger.warning(
                "ChunkProcessor | chunk %d (pages %d-%d) failed: %s",
                chunk.index, chunk.start_page, chunk.end_page, _reason(exc),
            )
            return f"{PLACEHOLDER_PREFIX} {chunk.start_page}-{chunk.end_page}: {_reason(exc)}]"
        return strategy.format_result(raw)

    @traced(
        "chunk_processor.consolidate",
        attributes=lambda self, partials, display_name, total_pages, *_: {
            "partials": len(partials),
            "pages": total_pages,
        },
        result_attributes=lambda result: {"degraded": result[1]},
    )
    async def _consolidate(
        self,
        partials:     list[str],
        display_name: str,
        total_pages:  int,
        model:        ChatModel,
        strategy:     ProcessingStrategy,
        progress_cb:  ProgressCallback | None,
        cancel:       asyncio.Event | None,
    ) -> tuple[str, bool]:
        """(artifact, degraded). Never raises except on cancellation."""
        prompt = strategy.get_prompt("consolidation", partials, display_name, total_pages)
        try:
            raw = await self._call_with_retry(model, prompt, cancel)
        except CancellationError:
            raise
        except Exception as exc:
            logger.warning("ChunkProcessor | consolidation failed, assembling locally: %s", _reason(exc))
            _emit(progress_cb, "⚠️ Consolidation failed, combining section results...\n\n")
            return strategy.assemble_degraded(partials, display_name), True
        return strategy.format_result(raw), False

    # ------------------------------------------------------------------
    # Tier 3
    # ------------------------------------------------------------------

    @traced(
        "chunk_processor.fallback",
        attributes=lambda self, text, *_: {"chars": len(text), "excerpt_chars": self._excerpt_chars},
    )
    async def _run_fallback_tier(
        self,
        text:           str,
        model:          ChatModel,
        strategy:       ProcessingStrategy,
        progress_cb:    ProgressCallback | None,
        cancel:         asyncio.Event | None,
        enhanced_error: str,
    ) -> Completed:
        _raise_if_cancelled(cancel)
        excerpt = text[:self._excerpt_chars] + EXCERPT_SUFFIX
        prompt  = strategy.get_prompt("fallback", excerpt)
        try:
            raw = await self._call_model(model, prompt, cancel)
        except CancellationError:
            raise
        except Exception as exc:
            reason = _reason(exc)
            _emit(progress_cb, f"❌ Both enhanced and fallback processing failed: {reason}\n\n")
            logger.error("ChunkProcessor | excerpt tier failed: %s (enhanced: %s)", reason, enhanced_error)
            raise TerminalProcessingError(
                f"Both enhanced and fallback processing failed: {reason}",
                {"enhanced_error": enhanced_error, "fallback_error": reason},
            ) from exc

        _emit(progress_cb, f"{EXCERPT_NOTE}\n\n")
        return Completed(
            artifact_text=strategy.format_result(raw),
            strategy_used="fallback",
            text_length=len(text),
        )

    # ------------------------------------------------------------------
    # Model calls
    # ------------------------------------------------------------------

    async def _call_with_retry(
        self,
        model:  ChatModel,
        prompt: str,
        cancel: asyncio.Event | None,
    ) -> str:
        return await with_retry(
            lambda: self._call_model(model, prompt, cancel),
            max_attempts=self._max_attempts,
            should_retry=should_retry_model_error,
            backoff_seconds=self._backoff_seconds,
            cancel=cancel,
        )

    async def _stream_with_retry(
        self,
        model:       ChatModel,
        prompt:      str,
        cancel:      asyncio.Event | None,
        progress_cb: ProgressCallback | None,
    ) -> tuple[str, bool]:
        """
        Retried call that streams to ``progress_cb`` until an attempt breaks.

        Returns (raw, streamed). Once an attempt has written fragments and
        then failed, the next attempt writes a retry notice and runs
        silently, and ``streamed`` is False: the sink holds a broken partial
        reply, so the caller must emit the clean artifact itself.
        """
        interrupted = False
        noticed     = False

        async def attempt() -> str:
            nonlocal interrupted, noticed
            if interrupted:
                if not noticed:
                    noticed = True
                    _emit(progress_cb, f"\n\n{RETRY_NOTE}\n\n")
                return await self._call_model(model, prompt, cancel)

            wrote = False

            def forward(fragment: str) -> None:
                nonlocal wrote
                wrote = True
                _emit(progress_cb, fragment)

            try:
                return await self._call_model(model, prompt, cancel, forward if progress_cb else None)
            except Exception:
                interrupted = interrupted or wrote
                raise

        raw = await with_retry(
            attempt,
            max_attempts=self._max_attempts,
            should_retry=should_retry_model_error,
            backoff_seconds=self._backoff_seconds,
            cancel=cancel,
        )
        return raw, progress_cb is not None and not interrupted

    async def _call_model(
        self,
        model:       ChatModel,
        prompt:      str,
        cancel:      asyncio.Event | None,
        progress_cb: ProgressCallback | None = None,
    ) -> str:
        """One bounded model call; fragments go to ``progress_cb`` when given."""
        async def collect() -> str:
            parts: list[str] = []
            async for fragment in model.stream(build_messages(prompt), cancel):
                _raise_if_cancelled(cancel)
                parts.append(fragment)
                _emit(progress_cb, fragment)
            return "".join(parts)

        try:
            raw = await asyncio.wait_for(collect(), timeout=self._request_timeout)
        except asyncio.TimeoutError as exc:
            raise TransientModelError(
                f"Model request timed out after {self._request_timeout:.0f}s",
                {"model": model.name},
            ) from exc

        if progress_cb is not None and raw:
            _emit(progress_cb, "\n\n")
        _check_refusal(raw, model.name)
        return raw
