"""
Document Processing Package
════════════════════════════

Turns one extracted text body into one bounded-size artifact:

  Token Estimate → Semantic Chunking → Batched Model Calls → Consolidation

Modules
───────
  tokens.py      Character-ratio token estimator and budget helpers
  chunking.py    Token-budgeted chunker (paragraph → sentence → whitespace cuts)
  prompts.py     Stage templates per artifact kind
  strategies.py  Summary and outline-graph variants of the pipeline
  results.py     Outcome union returned by the processor
  processor.py   Tiered orchestration (single pass / map-reduce / excerpt)

Design principles
─────────────────
  • The processor is variant-agnostic; strategies are injected.
  • Nothing here touches the cache; persistence belongs to the caller.
  • Every stage emits structured log lines.
"""

from docdigest.processing.chunking import ChunkingConfig, DocumentChunk, SemanticChunker
from docdigest.processing.processor import ChunkProcessor
from docdigest.processing.results import Cancelled, Completed, NothingToProcess, ProcessingOutcome
from docdigest.processing.strategies import (
    ArtifactKind,
    OutlineGraphStrategy,
    ProcessingStrategy,
    SummarizationStrategy,
    get_strategy,
)

__all__ = [
    "ArtifactKind",
    "Cancelled",
    "ChunkProcessor",
    "ChunkingConfig",
    "Completed",
    "DocumentChunk",
    "NothingToProcess",
    "OutlineGraphStrategy",
    "ProcessingOutcome",
    "ProcessingStrategy",
    "SemanticChunker",
    "SummarizationStrategy",
    "get_strategy",
]
