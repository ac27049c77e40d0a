"""
Semantic Chunker  —  Token-Budgeted Text Segmentation
══════════════════════════════════════════════════════

Why not fixed-size chunks?
──────────────────────────
  Fixed-size chunking splits mid-sentence and mid-word:

    "The defendant pleaded guilty to
    [CHUNK BREAK]
    fraud charges in..."

  Each chunk is summarised independently, so a broken sentence is lost to
  both halves and the consolidation stage never sees it whole.

Our approach: boundary preference inside a token budget
───────────────────────────────────────────────────────
  1. The budget comes from the model's input ceiling (minus prompt headroom)
  2. Each chunk ends at the LAST paragraph break that fits the budget
  3. ...else at the last sentence end
  4. ...else at the last whitespace; words are never split
  5. A run of text with no whitespace at all is emitted whole (oversized);
     validate_chunks() then rejects the run as a configuration error

Overlap
───────
  Every chunk after the first starts with the trailing ``overlap_ratio``
  share of the previous chunk, moved forward to a word start. The chunk
  records how many leading characters are repeated (``overlap``), so

      "".join(c.content[c.overlap:] for c in chunks) == text

  Chunk contents are exact slices of the source; nothing is trimmed or
  re-joined.

Page ranges
───────────
  The upstream extractor inserts ``--- Page N ---`` markers. The page of a
  position is the highest marker number seen at or before it (page 1
  before any marker). A chunk's range covers its own slice (not the
  overlap), so ranges never run backwards across chunks.
"""

from __future__ import annotations

import logging
import math
import re
from bisect import bisect_right
from dataclasses import dataclass

from docdigest.core.config import settings
from docdigest.core.errors import ConfigurationError
from docdigest.processing import tokens

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration constants
# ---------------------------------------------------------------------------

SECONDS_PER_CHUNK_EST = 3.0    # rough model latency per chunk
SECONDS_VARIABILITY   = 0.5    # ±50%

_PAGE_MARKER_RE     = re.compile(r"--- Page (\d+) ---")
_PARAGRAPH_BREAK_RE = re.compile(r"\n[ \t]*\n\s*")
_SENTENCE_END_RE    = re.compile(r"[.!?][\"')\]]*\s+")
_WHITESPACE_RE      = re.compile(r"\s+")


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ChunkingConfig:
    max_tokens_per_chunk: int
    overlap_ratio:        float = 0.1
    sentence_boundary:    bool  = True
    paragraph_boundary:   bool  = True

    def __post_init__(self) -> None:
        if self.max_tokens_per_chunk <= 0:
            raise ConfigurationError(
                f"Chunk token budget must be positive, got {self.max_tokens_per_chunk}",
                {"max_tokens_per_chunk": self.max_tokens_per_chunk},
            )
        if not 0.0 <= self.overlap_ratio < 1.0:
            raise ConfigurationError(
                f"Overlap ratio must be in [0, 1), got {self.overlap_ratio}",
                {"overlap_ratio": self.overlap_ratio},
            )


@dataclass(frozen=True)
class DocumentChunk:
    """
    One page-tagged slice of the source, sized for a single model call.

    content    : the text sent to the model (overlap prefix included)
    index      : 0-based position in the chunk list
    start_page : page where the chunk's own slice begins (1-based)
    end_page   : page where it ends
    tokens     : estimated tokens of ``content``
    overlap    : leading characters of ``content`` repeated from the previous chunk
    """
    content:    str
    index:      int
    start_page: int
    end_page:   int
    tokens:     int
    overlap:    int = 0

    @property
    def body(self) -> str:
        """The chunk's own slice of the source, without the overlap prefix."""
        return self.content[self.overlap:]


# ---------------------------------------------------------------------------
# Page lookup
# ---------------------------------------------------------------------------

class _PageIndex:
    """Maps a character offset to a page number via the extractor's markers."""

    def __init__(self, text: str) -> None:
        self._offsets: list[int] = []
        self._pages:   list[int] = []
        running = 1
        for match in _PAGE_MARKER_RE.finditer(text):
            running = max(running, int(match.group(1)))
            self._offsets.append(match.start())
            self._pages.append(running)

    def page_at(self, offset: int) -> int:
        i = bisect_right(self._offsets, offset) - 1
        return self._pages[i] if i >= 0 else 1


# ---------------------------------------------------------------------------
# Core chunker
# ---------------------------------------------------------------------------

class SemanticChunker:
    """
    Stateless token-budgeted chunker.

    Usage:
        config = get_default_config(model.max_input_tokens)
        chunks = SemanticChunker(config).chunk(text)
        if not SemanticChunker(config).validate(chunks):
            raise ConfigurationError(...)
    """

    def __init__(self, config: ChunkingConfig) -> None:
        self._config    = config
        self._max_chars = tokens.max_characters_for(config.max_tokens_per_chunk)

    def chunk(self, text: str) -> list[DocumentChunk]:
        """
        Segment ``text`` into overlapping, page-tagged chunks.

        Returns an empty list for empty input.
        """
        if not text:
            logger.debug("SemanticChunker | empty text, nothing to chunk")
            return []

        pages  = _PageIndex(text)
        length = len(text)
        chunks: list[DocumentChunk] = []

        start         = 0   # first character of the chunk's own slice
        content_start = 0   # first character of its content (overlap included)

        while start < length:
            overlap = start - content_start
            room    = max(1, self._max_chars - overlap)
            end     = self._find_cut(text, start, start + room)
            content = text[content_start:end]

            chunks.append(DocumentChunk(
                content=content,
                index=len(chunks),
                start_page=pages.page_at(start),
                end_page=pages.page_at(end - 1),
                tokens=tokens.estimate(content),
                overlap=overlap,
            ))

            if end >= length:
                break
            content_start = self._overlap_start(text, content_start, end)
            start = end

        logger.info(
            "SemanticChunker | chars=%d chunks=%d budget_tokens=%d max_chars=%d",
            length, len(chunks), self._config.max_tokens_per_chunk, self._max_chars,
        )
        return chunks

    def validate(self, chunks: list[DocumentChunk]) -> bool:
        """False if any chunk's estimate exceeds the per-chunk budget."""
        limit = self._config.max_tokens_per_chunk
        for chunk in chunks:
            if chunk.tokens > limit:
                logger.warning(
                    "SemanticChunker | chunk %d exceeds token limit tokens=%d limit=%d",
                    chunk.index, chunk.tokens, limit,
                )
                return False
        return True

    # ------------------------------------------------------------------
    # Boundary search
    # ------------------------------------------------------------------

    def _find_cut(self, text: str, start: int, limit: int) -> int:
        """End offset (exclusive) of the chunk's own slice starting at ``start``."""
        if limit >= len(text):
            return len(text)

        window = text[start:limit]
        if self._config.paragraph_boundary:
            cut = _last_match_end(_PARAGRAPH_BREAK_RE, window)
            if cut:
                return start + cut
        if self._config.sentence_boundary:
            cut = _last_match_end(_SENTENCE_END_RE, window)
            if cut:
                return start + cut
        cut = _last_match_end(_WHITESPACE_RE, window)
        if cut:
            return start + cut

        # No whitespace before the budget ran out: keep the word whole.
        match = _WHITESPACE_RE.search(text, limit)
        return match.end() if match else len(text)

    def _overlap_start(self, text: str, content_start: int, end: int) -> int:
        """Where the next chunk's content begins, given the previous chunk's span."""
        size = math.floor((end - content_start) * self._config.overlap_ratio)
        size = min(size, self._max_chars - 1)
        if size <= 0:
            return end

        pos = end - size
        if text[pos].isspace() or not text[pos - 1].isspace():
            match = _WHITESPACE_RE.search(text, pos, end)
            if match is None:
                return end
            pos = match.end()
        return pos


# ---------------------------------------------------------------------------
# Module-level API
# ---------------------------------------------------------------------------

def get_default_config(model_max_input_tokens: int) -> ChunkingConfig:
    """
    Derive the chunking budget from the model's advertised input ceiling.

    Raises:
        ConfigurationError: if the ceiling leaves no room for content.
    """
    return ChunkingConfig(
        max_tokens_per_chunk=tokens.optimal_chunk_size(model_max_input_tokens),
        overlap_ratio=settings.overlap_ratio,
        sentence_boundary=True,
        paragraph_boundary=True,
    )


def create_semantic_chunks(text: str, config: ChunkingConfig) -> list[DocumentChunk]:
    return SemanticChunker(config).chunk(text)


def validate_chunks(chunks: list[DocumentChunk], config: ChunkingConfig) -> bool:
    return SemanticChunker(config).validate(chunks)


def estimate_processing_time(chunks: list[DocumentChunk]) -> float:
    """Pessimistic wall-clock estimate in seconds for processing ``chunks``."""
    return len(chunks) * SECONDS_PER_CHUNK_EST * (1 + SECONDS_VARIABILITY)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _last_match_end(pattern: re.Pattern[str], window: str) -> int:
    """End offset of the last match in ``window``; 0 when there is none."""
    last = 0
    for match in pattern.finditer(window):
        last = match.end()
    return last
