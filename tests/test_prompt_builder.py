"""Unit tests for prompt construction."""
import sys
from pathlib import Path

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent.parent / "backend"))

from models.assignment import ChunkAssignment, QueryAssignment, QueryAssignmentMap
from models.optimization import ChunkSummaryInput, ContentAnalysis, OptimizationResult
from services.prompt_builder import (
    BRIEF_CONTENT_PREVIEW_CHARS,
    OPTIMIZE_TOOL,
    build_brief_prompt,
    build_focused_prompt,
    split_heading,
)


def assignment(chunk_index, *queries):
    assigned = [QueryAssignment(q, chunk_index, 0.6, is_primary=False) for q in queries]
    return ChunkAssignment(chunk_index, "preview", assigned, 0.6)


class TestSplitHeading:

    def test_no_heading(self):
        assert split_heading("Just a paragraph.\n") == ("", "Just a paragraph.")

    def test_heading_cascade(self):
        text = "# Guide\n\n## Setup\n\nInstall the package."
        assert split_heading(text) == ("# Guide\n\n## Setup", "Install the package.")

    def test_heading_only(self):
        assert split_heading("## Empty section\n") == ("## Empty section", "")


class TestFocusedPrompt:

    def test_heading_is_context_and_body_is_rewritten(self):
        chunks = ["## Pricing\n\nIt costs ten dollars.", "Unrelated chunk."]
        assignments = QueryAssignmentMap(
            assignments=[QueryAssignment("price", 0, 0.6, True)],
            chunk_assignments=[assignment(0, "price")],
        )

        prompt = build_focused_prompt(chunks, assignments, ContentAnalysis(topic_segments=[], optimization_opportunities=[]))

        assert "### CHUNK 1" in prompt.user
        assert "HEADING (context only): ## Pricing" in prompt.user
        assert 'BODY TO REWRITE:\n"""\nIt costs ten dollars.\n"""' in prompt.user
        assert "Unrelated chunk." not in prompt.user
        assert prompt.tool is OPTIMIZE_TOOL
        assert prompt.tool.output_model is OptimizationResult

    def test_caller_headings_take_precedence(self):
        chunks = ["Body one.", "Body two."]
        assignments = QueryAssignmentMap(
            assignments=[],
            chunk_assignments=[assignment(1, "q1", "q2")],
        )

        prompt = build_focused_prompt(
            chunks,
            assignments,
            ContentAnalysis(topic_segments=[], optimization_opportunities=[]),
            chunk_headings=[None, "Installation"],
        )

        assert "### CHUNK 2" in prompt.user
        assert "HEADING (context only): Installation" in prompt.user
        assert 'ASSIGNED QUERIES: "q1", "q2"' in prompt.user


class TestBriefPrompt:

    def test_outline_and_truncated_preview(self):
        content = "x" * (BRIEF_CONTENT_PREVIEW_CHARS + 500)
        summaries = [ChunkSummaryInput(index=0, heading="Intro", preview="Welcome")]

        prompt = build_brief_prompt("refund policy", content, summaries)

        assert 'Target query: "refund policy"' in prompt.user
        assert "[0] Intro: Welcome" in prompt.user
        assert "x" * (BRIEF_CONTENT_PREVIEW_CHARS + 1) not in prompt.user
