"""Tests for ChunkingEngine."""
import sys
from pathlib import Path

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent.parent / "backend"))

import pytest

from models.chunk import Chunk, ChunkingStrategy
from services.chunking_engine import ChunkingEngine


def word_tokenizer(text: str) -> list:
    """One token per whitespace-separated word."""
    return text.split()


@pytest.fixture
def engine():
    return ChunkingEngine(fixed_chunk_size=30, max_chunk_tokens=20, chunk_overlap=5, tokenizer=word_tokenizer)


class TestChunkModel:

    def test_heading_property(self):
        chunk = Chunk(chunk_id="chunk-0", index=0, text="t", word_count=1, char_count=1,
                      heading_path=["Guide", "Setup"])
        assert chunk.heading == "Setup"

    def test_no_heading(self):
        chunk = Chunk(chunk_id="chunk-0", index=0, text="t", word_count=1, char_count=1)
        assert chunk.heading is None


class TestSimpleStrategies:
    """Paragraph, semantic and fixed chunking."""

    def test_paragraph(self, engine):
        content = "First paragraph.\n\nSecond paragraph here.\n   \nThird."

        chunks = engine.chunk(content, ChunkingStrategy.PARAGRAPH)

        assert [c.text for c in chunks] == ["First paragraph.", "Second paragraph here.", "Third."]
        assert [c.chunk_id for c in chunks] == ["chunk-0", "chunk-1", "chunk-2"]
        assert chunks[1].word_count == 3
        assert chunks[1].char_count == len("Second paragraph here.")
        assert chunks[1].token_count == 3

    def test_strategy_accepts_string(self, engine):
        assert len(engine.chunk("a\n\nb", "paragraph")) == 2

    def test_unknown_strategy_raises(self, engine):
        with pytest.raises(ValueError):
            engine.chunk("a", "sentences")

    def test_semantic_groups_sentences(self, engine):
        content = "One. Two. Three! Four? Five."

        chunks = engine.chunk(content, ChunkingStrategy.SEMANTIC)

        assert [c.text for c in chunks] == ["One. Two.", "Three! Four? Five."]

    def test_semantic_single_sentence(self, engine):
        assert [c.text for c in engine.chunk("Only one sentence.", "semantic")] == ["Only one sentence."]

    def test_fixed_packs_whole_words(self, engine):
        content = "alpha beta gamma delta epsilon zeta eta theta"

        chunks = engine.chunk(content, ChunkingStrategy.FIXED)

        assert all(len(c.text) <= 30 for c in chunks)
        assert " ".join(c.text for c in chunks) == content

    def test_fixed_oversized_word_kept_whole(self):
        engine = ChunkingEngine(fixed_chunk_size=5, tokenizer=word_tokenizer)

        chunks = engine.chunk("internationalization is long", "fixed")

        assert chunks[0].text == "internationalization"

    def test_empty_content(self, engine):
        assert engine.chunk("", ChunkingStrategy.PARAGRAPH) == []
        assert engine.chunk("   ", ChunkingStrategy.LAYOUT_AWARE) == []


class TestLayoutAware:
    """Markdown heading cascade chunking."""

    def test_cascade_prepended(self, engine):
        content = "# Guide\n\nIntro text.\n\n## Setup\n\nInstall it.\n\n## Usage\n\nRun it."

        chunks = engine.chunk(content, ChunkingStrategy.LAYOUT_AWARE)

        assert [c.heading_path for c in chunks] == [["Guide"], ["Guide", "Setup"], ["Guide", "Usage"]]
        assert chunks[1].text == "# Guide\n\n## Setup\n\nInstall it."
        assert chunks[1].text_without_cascade == "Install it."
        assert chunks[1].word_count == 2

    def test_sibling_heading_replaces_previous(self, engine):
        content = "# A\n\n## B\n\n### C\n\nDeep.\n\n## D\n\nShallow."

        chunks = engine.chunk(content, "layout_aware")

        assert chunks[-1].heading_path == ["A", "D"]

    def test_heading_without_body_is_skipped(self, engine):
        content = "# Title\n\n## Empty\n\n## Filled\n\nText."

        chunks = engine.chunk(content, "layout_aware")

        assert len(chunks) == 1
        assert chunks[0].heading_path == ["Title", "Filled"]

    def test_content_before_first_heading(self, engine):
        chunks = engine.chunk("Preamble.\n\n# Title\n\nBody.", "layout_aware")

        assert chunks[0].heading_path == []
        assert chunks[0].text == "Preamble."

    def test_code_fence_hash_is_not_heading(self, engine):
        content = "# Code\n\n```\n# not a heading\n\nstill code\n```\n\nAfter."

        chunks = engine.chunk(content, "layout_aware")

        assert len(chunks) == 1
        assert "# not a heading" in chunks[0].text_without_cascade
        assert "still code" in chunks[0].text_without_cascade

    def test_without_cascade(self, engine):
        chunks = engine.chunk_layout_aware("# Title\n\nBody.", cascade_headings=False)

        assert chunks[0].text == "Body."
        assert chunks[0].heading_path == ["Title"]

    def test_large_body_split_with_overlap(self, engine):
        sentences = [f"Sentence number {i} has six words." for i in range(10)]
        # One long paragraph (60 words) split into sentences, limit 20 tokens
        content = "# Big\n\n" + " ".join(sentences)
        engine.max_chunk_tokens = 20
        engine.chunk_overlap = 6

        with pytest.MonkeyPatch.context() as mp:
            mp.setattr("services.chunking_engine.SMALL_BLOCK_TOKENS", 10)
            chunks = engine.chunk(content, "layout_aware")

        assert len(chunks) > 1
        for chunk in chunks:
            assert chunk.text.startswith("# Big\n\n")
            assert engine.count_tokens(chunk.text_without_cascade) <= 20
        # Last sentence of one chunk opens the next
        first_tail = chunks[0].text_without_cascade.split("\n\n")[-1]
        assert chunks[1].text_without_cascade.startswith(first_tail)

    def test_chunk_indexes_are_sequential(self, engine):
        content = "# A\n\nOne.\n\n# B\n\nTwo.\n\n# C\n\nThree."

        chunks = engine.chunk(content, "layout_aware")

        assert [c.index for c in chunks] == [0, 1, 2]
        assert [c.chunk_id for c in chunks] == ["chunk-0", "chunk-1", "chunk-2"]
