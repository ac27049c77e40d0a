"""
Processing outcomes — a closed union discriminated by ``kind``.

  Completed         an artifact was produced (enhanced or excerpt fallback)
  FallbackRequired  the enhanced tiers failed; the excerpt tier must run
                    (internal to the processor, never returned to callers)
  Cancelled         the cancellation signal fired; nothing may be cached
  NothingToProcess  the input text was empty
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Union

StrategyUsed = Literal["enhanced", "fallback"]


@dataclass(frozen=True)
class Completed:
    artifact_text: str
    strategy_used: StrategyUsed
    text_length:   int
    chunk_count:   int  = 0       # 0 for single-pass and excerpt runs
    degraded:      bool = False   # consolidation replaced by local assembly
    streamed:      bool = False   # artifact already went to the progress sink
    kind: Literal["completed"] = "completed"


@dataclass(frozen=True)
class FallbackRequired:
    error: str
    kind: Literal["fallback_required"] = "fallback_required"


@dataclass(frozen=True)
class Cancelled:
    kind: Literal["cancelled"] = "cancelled"


@dataclass(frozen=True)
class NothingToProcess:
    kind: Literal["empty"] = "empty"


ProcessingOutcome = Union[Completed, Cancelled, NothingToProcess]
EnhancedOutcome   = Union[Completed, FallbackRequired, Cancelled]
