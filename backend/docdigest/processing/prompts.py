"""
Prompt templates for each pipeline stage, per artifact kind.

Wording is policy, not structure: templates can be edited freely as long
as the placeholders stay. Outline-graph prompts ask the model to wrap its
answer in a fenced ```mermaid block so the result can be extracted
unambiguously.
"""

from __future__ import annotations

from typing import Final

# ---------------------------------------------------------------------------
# Narrative summary
# ---------------------------------------------------------------------------

SUMMARY_SINGLE_CHUNK: Final[str] = """\
Summarize this document:

**File:** {file_name}
**Strategy:** Full content analysis

**Content:**
{text}

Provide:
1. Brief overview
2. Key points
3. Main findings
4. Document structure"""

SUMMARY_CHUNK: Final[str] = """\
Summarize this section of the document:

**File:** {file_name}
**Section:** Pages {start_page}-{end_page} (Chunk {number})
**Content:**
{content}

Provide a comprehensive summary focusing on:
1. Main topics and themes
2. Key information and findings
3. Important details
4. Context and structure

Keep the summary detailed enough to preserve important information for later consolidation."""

SUMMARY_CONSOLIDATION: Final[str] = """\
Create a comprehensive final summary from these section summaries of a document:

**File:** {file_name}
**Total Pages:** {total_pages}
**Section Summaries:**
{sections}

Create a unified summary that:
1. Provides a clear overview of the entire document
2. Synthesizes key themes and findings across all sections
3. Maintains logical flow and coherence
4. Highlights the most important information
5. Notes the document structure and organization"""

SUMMARY_FALLBACK: Final[str] = "Provide a brief summary of this document excerpt:\n\n{excerpt}"

# ---------------------------------------------------------------------------
# Outline graph (Mermaid mindmap)
# ---------------------------------------------------------------------------

GRAPH_SINGLE_CHUNK: Final[str] = """\
Create a Mermaid mindmap from this document:

**File:** {file_name}
**Strategy:** Full content analysis

**Content:**
{text}

Generate a Mermaid mindmap using proper syntax:
1. Start with the "mindmap" declaration
2. Use a root node with the document title: root((Document Title))
3. Create main branches for key topics
4. Add sub-branches for important details
5. Use clear, concise node labels

Wrap the mindmap in a ```mermaid fenced block, for example:
```mermaid
mindmap
  root((Document Title))
    Topic1
      SubTopic1
    Topic2
      SubTopic2
```"""

GRAPH_CHUNK: Final[str] = """\
Create Mermaid mindmap branches from this part of a document:

**File:** {file_name}
**Section:** Pages {start_page}-{end_page} (Chunk {number})
**Content:**
{content}

Return only the branch structure (no "mindmap" declaration or root node), \
indented with two spaces per level, for example:
```mermaid
MainConcept1
  SubConcept1
  SubConcept2
MainConcept2
  SubConcept3
```"""

GRAPH_CONSOLIDATION: Final[str] = """\
Create a unified Mermaid mindmap from these section mindmaps of a document:

**File:** {file_name}
**Total Pages:** {total_pages}
**Section Mindmaps:**
{sections}

Create a mindmap that:
1. Starts with the "mindmap" declaration
2. Uses a root node with the document title: root((Document Title))
3. Organizes all section content into logical main branches
4. Eliminates redundancy while preserving important details

Wrap the result in a ```mermaid fenced block."""

GRAPH_FALLBACK: Final[str] = (
    "Create a simple Mermaid mindmap, wrapped in a ```mermaid fenced block, "
    "from this document excerpt:\n\n{excerpt}"
)


def join_sections(partials: list[str]) -> str:
    """Number partial results as ``## Section i`` blocks in document order."""
    return "\n\n".join(f"## Section {i}\n{text}" for i, text in enumerate(partials, start=1))
