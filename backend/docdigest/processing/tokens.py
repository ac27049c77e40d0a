"""
Token Estimator — character-ratio token counts without a tokenizer.

The estimate is deliberately pessimistic: characters are divided by
CHARS_PER_TOKEN (≈3.5 for English prose) and a further overhead ratio is
added on top, so a text the estimator says fits will fit in practice.

    estimate(text) = ceil(ceil(len(text) / chars_per_token) * (1 + overhead))

Used both to decide single-pass vs. chunked processing and to size chunks.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass

from docdigest.core.config import settings

_WORD_CHAR_RE = re.compile(r"[a-zA-Z0-9\s]")


@dataclass(frozen=True)
class TokenEstimate:
    tokens:     int
    characters: int
    method:     str
    confidence: float


def estimate_length(length: int) -> int:
    """Token estimate for a text of ``length`` characters."""
    if length <= 0:
        return 0
    return math.ceil(characters_to_tokens(length) * (1 + settings.token_overhead_ratio))


def estimate(text: str) -> int:
    return estimate_length(len(text))


def estimate_with_metadata(text: str) -> TokenEstimate:
    return TokenEstimate(
        tokens=estimate(text),
        characters=len(text),
        method="character-based",
        confidence=_confidence(text),
    )


def _confidence(text: str) -> float:
    """
    Higher for typical prose, lower for code or symbol-heavy text.
    Typical English averages 4–5 characters per word.
    """
    if not text:
        return 0.5
    alnum_ratio = len(_WORD_CHAR_RE.findall(text)) / len(text)
    words = text.split()
    avg_word = sum(len(w) for w in words) / len(words) if words else 0.0
    word_score = max(0.0, 1 - abs(avg_word - 4.5) / 10)
    return min(0.95, 0.5 + alnum_ratio * 0.3 + word_score * 0.2)


def optimal_chunk_size(max_model_tokens: int) -> int:
    """Per-chunk token budget: the model ceiling minus prompt headroom, scaled."""
    usable = max_model_tokens - settings.prompt_overhead_tokens
    return math.floor(usable * settings.chunk_size_ratio)


def tokens_to_characters(tokens: int) -> int:
    return math.floor(tokens * settings.chars_per_token)


def characters_to_tokens(characters: int) -> int:
    return math.ceil(characters / settings.chars_per_token)


def max_characters_for(tokens: int) -> int:
    """Largest text length whose estimate stays within ``tokens``."""
    if tokens <= 0:
        return 0
    # first guess from the inverse formula, then nudged onto the exact boundary
    n = tokens_to_characters(math.floor(tokens / (1 + settings.token_overhead_ratio)))
    while n > 0 and estimate_length(n) > tokens:
        n -= 1
    while estimate_length(n + 1) <= tokens:
        n += 1
    return n
