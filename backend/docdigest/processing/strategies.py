"""
Processing strategies — the only part of the pipeline that differs between
artifact kinds.

The chunk processor is variant-agnostic. A strategy supplies:
  - get_prompt(stage, *args)      prompt text for each pipeline stage
  - format_result(raw)            post-processing of raw model output
  - assemble_degraded(partials)   local stand-in when consolidation fails

Stages and their arguments:
  single_chunk   (file_name, text)
  chunk          (chunk, file_name)
  consolidation  (partials, file_name, total_pages)
  fallback       (excerpt,)
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Any, Literal, Protocol

from docdigest.processing import prompts
from docdigest.processing.chunking import DocumentChunk

PromptStage = Literal["single_chunk", "chunk", "consolidation", "fallback"]

_MERMAID_BLOCK_RE = re.compile(r"```mermaid[^\n]*\n?(.*?)```", re.DOTALL)
_FENCED_BLOCK_RE  = re.compile(r"```[^\n]*\n(.*?)```", re.DOTALL)
_MINDMAP_HEADER_RE = re.compile(r"^\s*mindmap\s*$")
_ROOT_NODE_RE      = re.compile(r"^\s*root\b")


class ArtifactKind(str, Enum):
    """Artifact namespaces; each is cached independently."""
    SUMMARY       = "summary"
    OUTLINE_GRAPH = "outline_graph"


class ProcessingStrategy(Protocol):
    kind: ArtifactKind

    def get_prompt(self, stage: PromptStage, *args: Any) -> str: ...

    def format_result(self, raw: str) -> str: ...

    def assemble_degraded(self, partials: list[str], file_name: str) -> str: ...


# ---------------------------------------------------------------------------
# Shared prompt dispatch
# ---------------------------------------------------------------------------

class _TemplateStrategy:
    """Renders the four stage templates; subclasses pick the template set."""

    kind: ArtifactKind
    _single_chunk:  str
    _chunk:         str
    _consolidation: str
    _fallback:      str

    def get_prompt(self, stage: PromptStage, *args: Any) -> str:
        if stage == "single_chunk":
            file_name, text = args
            return self._single_chunk.format(file_name=file_name, text=text)
        if stage == "chunk":
            chunk, file_name = args
            return self._render_chunk(chunk, file_name)
        if stage == "consolidation":
            partials, file_name, total_pages = args
            return self._consolidation.format(
                file_name=file_name,
                total_pages=total_pages,
                sections=prompts.join_sections(partials),
            )
        if stage == "fallback":
            (excerpt,) = args
            return self._fallback.format(excerpt=excerpt)
        raise ValueError(f"Unknown prompt stage: {stage!r}")

    def _render_chunk(self, chunk: DocumentChunk, file_name: str) -> str:
        return self._chunk.format(
            file_name=file_name,
            start_page=chunk.start_page,
            end_page=chunk.end_page,
            number=chunk.index + 1,
            content=chunk.content,
        )


# ---------------------------------------------------------------------------
# Narrative summary
# ---------------------------------------------------------------------------

class SummarizationStrategy(_TemplateStrategy):
    kind           = ArtifactKind.SUMMARY
    _single_chunk  = prompts.SUMMARY_SINGLE_CHUNK
    _chunk         = prompts.SUMMARY_CHUNK
    _consolidation = prompts.SUMMARY_CONSOLIDATION
    _fallback      = prompts.SUMMARY_FALLBACK

    def format_result(self, raw: str) -> str:
        return raw.strip()

    def assemble_degraded(self, partials: list[str], file_name: str) -> str:
        return (
            f"# Document Summary\n\n{prompts.join_sections(partials)}\n\n"
            "*Note: Automatic consolidation failed, showing section summaries.*"
        )


# ---------------------------------------------------------------------------
# Outline graph
# ---------------------------------------------------------------------------

class OutlineGraphStrategy(_TemplateStrategy):
    kind           = ArtifactKind.OUTLINE_GRAPH
    _single_chunk  = prompts.GRAPH_SINGLE_CHUNK
    _chunk         = prompts.GRAPH_CHUNK
    _consolidation = prompts.GRAPH_CONSOLIDATION
    _fallback      = prompts.GRAPH_FALLBACK

    def format_result(self, raw: str) -> str:
        """Extract the fenced diagram block; fall back to the trimmed raw text."""
        match = _MERMAID_BLOCK_RE.search(raw) or _FENCED_BLOCK_RE.search(raw)
        return match.group(1).strip() if match else raw.strip()

    def assemble_degraded(self, partials: list[str], file_name: str) -> str:
        """
        Graft each section's branches under one root.

            mindmap
              root((file name))
                Section 1
                  <section 1 branches>
        """
        lines = [
            "%% Automatic consolidation failed, showing section mindmaps.",
            "mindmap",
            f"  root(({_node_label(file_name)}))",
        ]
        for number, partial in enumerate(partials, start=1):
            lines.append(f"    Section {number}")
            for branch in _branch_lines(self.format_result(partial)):
                lines.append(f"      {branch}")
        return "\n".join(lines)


def _branch_lines(body: str) -> list[str]:
    """Branch lines of a partial mindmap, dedented, without header or root."""
    raw = [
        line.rstrip()
        for line in body.splitlines()
        if line.strip() and not _MINDMAP_HEADER_RE.match(line) and not line.lstrip().startswith("%%")
    ]
    if raw and _ROOT_NODE_RE.match(raw[0]):
        raw = raw[1:]
    if not raw:
        return []
    indent = min(len(line) - len(line.lstrip()) for line in raw)
    return [line[indent:] for line in raw]


def _node_label(text: str) -> str:
    """Strip characters that would close a Mermaid node shape early."""
    return re.sub(r"[()\[\]{}]", " ", text).strip() or "Document"


# ---------------------------------------------------------------------------
# Lookup
# ---------------------------------------------------------------------------

_STRATEGIES: dict[ArtifactKind, ProcessingStrategy] = {
    ArtifactKind.SUMMARY:       SummarizationStrategy(),
    ArtifactKind.OUTLINE_GRAPH: OutlineGraphStrategy(),
}


def get_strategy(kind: ArtifactKind | str) -> ProcessingStrategy:
    return _STRATEGIES[ArtifactKind(kind)]
