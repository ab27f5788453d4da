"""
Prompt templates and tool definitions for the generative provider.

Every request is a system prompt, a user payload and exactly one tool whose
parameters are the JSON schema of the pydantic model the response is
validated against. The tool is forced via tool_choice so the model must
answer with structured arguments instead of free text.
"""
import json
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Type

from pydantic import BaseModel

from models.assignment import QueryAssignmentMap
from models.optimization import (
    ChunkScoreData,
    ChunkSummaryInput,
    ContentAnalysis,
    ContentBrief,
    ExplanationsResult,
    KeywordSuggestions,
    OptimizationResult,
    SummaryResult,
    ValidatedChunk,
)

# Leading Markdown heading lines of a chunk
LEADING_HEADINGS = re.compile(r"^(#{1,6}\s+[^\n]+\n+)+")

BRIEF_CONTENT_PREVIEW_CHARS = 4000


@dataclass(frozen=True)
class ToolSpec:
    """A function tool the provider is forced to call."""
    name: str
    description: str
    output_model: Type[BaseModel]

    def to_tool(self) -> dict:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.output_model.model_json_schema(),
            },
        }

    def tool_choice(self) -> dict:
        return {"type": "function", "function": {"name": self.name}}


@dataclass(frozen=True)
class Prompt:
    system: str
    user: str
    tool: ToolSpec

    def messages(self) -> List[dict]:
        return [
            {"role": "system", "content": self.system},
            {"role": "user", "content": self.user},
        ]


ANALYZE_TOOL = ToolSpec(
    "analyze_content", "Analyze content for retrieval optimization opportunities", ContentAnalysis
)
OPTIMIZE_TOOL = ToolSpec(
    "generate_optimizations", "Generate optimized content with tracked changes", OptimizationResult
)
EXPLAIN_TOOL = ToolSpec(
    "generate_explanations", "Generate user-friendly explanations for changes", ExplanationsResult
)
SUMMARY_TOOL = ToolSpec(
    "generate_summary", "Explain per-query score changes and suggest next steps", SummaryResult
)
BRIEF_TOOL = ToolSpec(
    "generate_content_brief", "Outline new content for a query no existing passage covers", ContentBrief
)
KEYWORDS_TOOL = ToolSpec(
    "suggest_keywords", "Suggest SEO keywords for the content", KeywordSuggestions
)


def split_heading(text: str) -> tuple:
    """Split leading Markdown heading lines from a chunk: (heading block, body)."""
    match = LEADING_HEADINGS.match(text)
    if not match:
        return "", text.strip()
    return match.group(0).strip(), text[match.end():].strip()


def _numbered(queries: Sequence[str]) -> str:
    if not queries:
        return "None provided"
    return "\n".join(f'{i + 1}. "{q}"' for i, q in enumerate(queries))


def _scores_block(current_scores: Optional[Dict[str, float]]) -> str:
    if not current_scores:
        return ""
    return f"Current Scores:\n{json.dumps(current_scores, indent=2)}\n\n"


def build_analyze_prompt(
    content: str,
    queries: Sequence[str],
    current_scores: Optional[Dict[str, float]] = None
) -> Prompt:
    system = """You are a content optimization expert for RAG retrieval systems.

Analyze content to identify optimization opportunities:
1. Topic boundaries where splits would improve focus
2. Pronouns/references that create cross-chunk dependencies
3. Missing context that would improve self-containment
4. Heading opportunities that would boost semantic matching
5. Entity references that should be more explicit

Consider current similarity scores to prioritize high-impact changes."""

    user = f'''Analyze this content for retrieval optimization:

Content:
"""
{content}
"""

Target Queries:
{_numbered(queries)}

{_scores_block(current_scores)}Identify optimization opportunities and rank by expected impact.'''

    return Prompt(system, user, ANALYZE_TOOL)


_REWRITE_RULES = """You rewrite content to improve RAG retrieval while maintaining:
- Natural, readable prose
- Original meaning and facts
- Professional tone
- Minimal repetition

Each chunk should:
1. Focus on one main topic
2. Be self-contained (no external dependencies)
3. Front-load key entities
4. Include relevant semantic signals

Avoid keyword stuffing and filler phrases. Show specific changes and explain retrieval impact."""


def build_optimize_prompt(
    content: str,
    queries: Sequence[str],
    analysis: ContentAnalysis,
    current_scores: Optional[Dict[str, float]] = None
) -> Prompt:
    user = f'''Original Content:
"""
{content}
"""

Analysis:
{analysis.model_dump_json(indent=2)}

{_scores_block(current_scores)}Target Queries: {", ".join(queries) or "None"}

Rewrite the content applying the identified optimizations. For each change:
1. Show exact before/after text
2. Explain why it improves retrieval, naming the query it targets
3. Predict score impact

Maintain readability - don't make it robotic.'''

    return Prompt(_REWRITE_RULES, user, OPTIMIZE_TOOL)


def build_focused_prompt(
    chunks: Sequence[str],
    assignment_map: QueryAssignmentMap,
    analysis: ContentAnalysis,
    chunk_headings: Optional[Sequence[Optional[str]]] = None
) -> Prompt:
    """
    One rewrite request covering every chunk that owns at least one query.

    The heading of each chunk is given as read-only context, separate from
    the body to rewrite, so the provider never repeats it in optimized_text.
    """
    system = _REWRITE_RULES + """

FOCUSED MODE:
- Rewrite each chunk ONLY for the queries assigned to it.
- The HEADING of a chunk is context. Do not rewrite it and do not include it in optimized_text.
- original_text must be the BODY exactly as given.
- chunk_number is the number shown for the chunk."""

    sections = []
    for chunk_assignment in assignment_map.chunk_assignments:
        index = chunk_assignment.chunk_index
        if index >= len(chunks) or not chunk_assignment.assigned_queries:
            continue

        heading_block, body = split_heading(chunks[index])
        if chunk_headings and index < len(chunk_headings) and chunk_headings[index]:
            heading_block = chunk_headings[index]

        assigned = ", ".join(f'"{qa.query}"' for qa in chunk_assignment.assigned_queries)
        sections.append(
            f"### CHUNK {index + 1}\n"
            f"HEADING (context only): {heading_block or 'None'}\n"
            f"ASSIGNED QUERIES: {assigned}\n"
            f'BODY TO REWRITE:\n"""\n{body}\n"""'
        )

    user = f"""Analysis:
{analysis.model_dump_json(indent=2)}

{chr(10).join(sections)}

Return one optimized chunk per chunk above."""

    return Prompt(system, user, OPTIMIZE_TOOL)


def build_explain_prompt(validated_chunks: Sequence[ValidatedChunk], queries: Sequence[str]) -> Prompt:
    system = """You explain content optimization changes clearly and concisely.

For each change:
1. What specifically changed (concrete)
2. Why it improves retrieval (semantic reason)
3. Actual quantitative impact (scores)
4. Any trade-offs

Keep explanations to 2-3 sentences. Use specific numbers."""

    payload = json.dumps([c.model_dump(mode="json") for c in validated_chunks], indent=2)
    user = f"""Generate user-facing explanations for these validated changes:

{payload}

Queries: {", ".join(queries) or "None"}

Make explanations clear for content creators who may not know RAG internals."""

    return Prompt(system, user, EXPLAIN_TOOL)


def build_summary_prompt(
    queries: Sequence[str],
    validated_chunks: Sequence[ValidatedChunk],
    chunk_score_data: Sequence[ChunkScoreData]
) -> Prompt:
    system = """You explain retrieval score changes after a content rewrite.

The Passage Score (0-100) blends chunk cosine similarity (70%) with document-level
Chamfer coverage (30%). Tiers: Excellent >= 90, Good >= 75, Moderate >= 60, Weak >= 40, else Poor.

For every chunk and query, explain in one or two sentences why the score moved.
Then give concrete further suggestions and any trade-offs the rewrite introduced."""

    changes = [
        {"chunk_number": c.chunk_number, "heading": c.heading,
         "changes": [ch.change_type.value for ch in c.changes_applied]}
        for c in validated_chunks
    ]
    user = f"""Queries:
{_numbered(queries)}

Score data:
{json.dumps([c.model_dump(mode="json") for c in chunk_score_data], indent=2)}

Changes applied:
{json.dumps(changes, indent=2)}"""

    return Prompt(system, user, SUMMARY_TOOL)


def build_brief_prompt(
    query: str,
    content: str,
    chunk_summaries: Sequence[ChunkSummaryInput]
) -> Prompt:
    system = """You plan new content for a document.

A target query has no existing passage that answers it well. Write a brief for a
new section: a heading, where it belongs relative to the existing passages, the
key points it must cover, a target length and a draft opening paragraph.
Explain what the existing content is missing for this query."""

    outline = "\n".join(
        f"[{s.index}] {s.heading or '(no heading)'}: {s.preview}" for s in chunk_summaries
    ) or "(document has no passages yet)"

    preview = content[:BRIEF_CONTENT_PREVIEW_CHARS]
    user = f'''Target query: "{query}"

Existing passages:
{outline}

Document (may be truncated):
"""
{preview}
"""'''

    return Prompt(system, user, BRIEF_TOOL)


def build_keywords_prompt(content: str) -> Prompt:
    system = """You are an SEO and content retrieval expert. Analyze content to identify the most valuable target SEO keywords that users would likely search for to find this content.

Focus on:
1. Primary topics and entities mentioned
2. User intent - what questions would lead someone to this content
3. Long-tail keywords with good specificity
4. Keywords that would have high retrieval relevance
5. Mix of head terms and specific phrases

Prioritize keywords by search intent alignment and retrieval potential."""

    user = f'''Analyze this content and suggest 5-7 target SEO keywords that would be most valuable for retrieval optimization:

Content:
"""
{content}
"""

Suggest keywords that:
- Represent the main topics users would search for
- Have high semantic alignment with the content
- Would be useful for embedding-based retrieval testing'''

    return Prompt(system, user, KEYWORDS_TOOL)
