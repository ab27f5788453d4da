"""Chunking engine with Markdown heading cascade injection."""
import logging
import re
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

import tiktoken

from models.chunk import Chunk, ChunkingStrategy
from config import FIXED_CHUNK_SIZE, MAX_CHUNK_TOKENS, CHUNK_OVERLAP_TOKENS

logger = logging.getLogger(__name__)

HEADING_LINE = re.compile(r"^(#{1,6})\s+(.+)$")
FENCE_LINE = re.compile(r"^(```|~~~)")
LIST_OR_TABLE = re.compile(r"^([-*+]\s|\d+\.\s|\|)", re.MULTILINE)
SENTENCE_END = re.compile(r"(?<=[.!?])\s+")
SENTENCE = re.compile(r"[^.!?]+[.!?]+")

# Blocks at most this many tokens are never split into sentences
SMALL_BLOCK_TOKENS = 100


@dataclass
class _Section:
    headings: List[Tuple[int, str]]  # (level, text) cascade at this point
    blocks: List[str] = field(default_factory=list)


def word_count(text: str) -> int:
    return len(text.split())


class ChunkingEngine:
    """Segments content into scorable chunks."""

    def __init__(
        self,
        fixed_chunk_size: int = FIXED_CHUNK_SIZE,
        max_chunk_tokens: int = MAX_CHUNK_TOKENS,
        chunk_overlap: int = CHUNK_OVERLAP_TOKENS,
        tokenizer: Optional[Callable[[str], List[int]]] = None
    ):
        """
        Initialize ChunkingEngine.

        Args:
            fixed_chunk_size: Max characters per chunk for the fixed strategy
            max_chunk_tokens: Max body tokens per layout-aware chunk (cascade excluded)
            chunk_overlap: Overlap between split layout-aware chunks in tokens
            tokenizer: Callable returning token ids for a text (defaults to tiktoken o200k_base)
        """
        self.fixed_chunk_size = fixed_chunk_size
        self.max_chunk_tokens = max_chunk_tokens
        self.chunk_overlap = chunk_overlap
        self._tokenizer = tokenizer

    @property
    def tokenizer(self) -> Callable[[str], List[int]]:
        if self._tokenizer is None:
            logger.info("Loading tiktoken encoder (o200k_base) for chunking...")
            self._tokenizer = tiktoken.get_encoding("o200k_base").encode
        return self._tokenizer

    def count_tokens(self, text: str) -> int:
        return len(self.tokenizer(text)) if text else 0

    def chunk(self, content: str, strategy: ChunkingStrategy = ChunkingStrategy.PARAGRAPH) -> List[Chunk]:
        """
        Chunk content with the given strategy.

        Args:
            content: Raw content (plain text or Markdown)
            strategy: Chunking strategy

        Returns:
            Chunks in document order, indexed from 0
        """
        strategy = ChunkingStrategy(strategy)
        if strategy == ChunkingStrategy.SEMANTIC:
            texts = self._split_semantic(content)
        elif strategy == ChunkingStrategy.FIXED:
            texts = self._split_fixed(content, self.fixed_chunk_size)
        elif strategy == ChunkingStrategy.LAYOUT_AWARE:
            chunks = self.chunk_layout_aware(content)
            logger.info(f"Created {len(chunks)} layout-aware chunks")
            return chunks
        else:
            texts = self._split_paragraphs(content)

        chunks = [self._make_chunk(i, text) for i, text in enumerate(texts)]
        logger.info(f"Created {len(chunks)} chunks with strategy '{strategy.value}'")
        return chunks

    def _make_chunk(
        self,
        index: int,
        text: str,
        body: Optional[str] = None,
        heading_path: Optional[List[str]] = None
    ) -> Chunk:
        counted = text if body is None else body
        return Chunk(
            chunk_id=f"chunk-{index}",
            index=index,
            text=text,
            word_count=word_count(counted),
            char_count=len(counted),
            text_without_cascade=body,
            heading_path=heading_path or [],
            token_count=self.count_tokens(counted),
        )

    @staticmethod
    def _split_paragraphs(content: str) -> List[str]:
        return [p.strip() for p in re.split(r"\n\s*\n", content) if p.strip()]

    @staticmethod
    def _split_semantic(content: str) -> List[str]:
        """Group sentences into chunks of two or three."""
        sentences = [s.strip() for s in SENTENCE_END.split(content) if s.strip()]
        groups: List[str] = []
        current: List[str] = []

        for i, sentence in enumerate(sentences):
            current.append(sentence)
            is_last = i == len(sentences) - 1
            should_split = len(current) >= 2 and (
                len(current) >= 3 or (sentence.endswith(".") and not is_last)
            )
            if should_split or is_last:
                groups.append(" ".join(current))
                current = []

        return groups

    @staticmethod
    def _split_fixed(content: str, max_chars: int) -> List[str]:
        """Pack whole words into chunks of at most max_chars characters."""
        chunks: List[str] = []
        current: List[str] = []
        length = 0

        for word in content.split():
            added = len(word) + (1 if current else 0)
            if current and length + added > max_chars:
                chunks.append(" ".join(current))
                current = [word]
                length = len(word)
            else:
                current.append(word)
                length += added

        if current:
            chunks.append(" ".join(current))
        return chunks

    def chunk_layout_aware(self, content: str, cascade_headings: bool = True) -> List[Chunk]:
        """
        Split Markdown into sections under their heading cascade.

        Each chunk's text is the cascade of every enclosing heading followed by
        the body; text_without_cascade holds the body only. Bodies larger than
        max_chunk_tokens are split on block and sentence boundaries with about
        chunk_overlap tokens repeated between neighbours.
        """
        chunks: List[Chunk] = []

        for section in self._parse_sections(content):
            cascade = ""
            if cascade_headings:
                cascade = "\n\n".join(f"{'#' * level} {text}" for level, text in section.headings)
            heading_path = [text for _, text in section.headings]

            body = "\n\n".join(section.blocks)
            if self.count_tokens(body) <= self.max_chunk_tokens:
                bodies = [body]
            else:
                bodies = self._split_with_overlap(body)

            for part in bodies:
                text = f"{cascade}\n\n{part}" if cascade else part
                chunks.append(self._make_chunk(len(chunks), text, body=part, heading_path=heading_path))

        return chunks

    @staticmethod
    def _parse_sections(content: str) -> List[_Section]:
        """Group body blocks under the heading stack in effect at each point."""
        sections: List[_Section] = []
        stack: List[Tuple[int, str]] = []
        current: Optional[_Section] = None
        block: List[str] = []
        in_fence = False

        def flush_block():
            if block and current is not None:
                current.blocks.append("\n".join(block).strip())
            block.clear()

        for line in content.split("\n"):
            if in_fence:
                block.append(line)
                if FENCE_LINE.match(line):
                    in_fence = False
                    flush_block()
                continue

            heading = HEADING_LINE.match(line)
            if heading:
                flush_block()
                if current is not None and current.blocks:
                    sections.append(current)
                level = len(heading.group(1))
                while stack and stack[-1][0] >= level:
                    stack.pop()
                stack.append((level, heading.group(2).strip()))
                current = _Section(headings=list(stack))
                continue

            if not line.strip():
                flush_block()
                continue

            if current is None:
                current = _Section(headings=[])
            if FENCE_LINE.match(line):
                flush_block()
                in_fence = True
            block.append(line)

        flush_block()
        if current is not None and current.blocks:
            sections.append(current)
        return sections

    def _segments(self, body: str) -> List[str]:
        segments: List[str] = []
        for block in re.split(r"\n\n+", body):
            if not block.strip():
                continue
            if self.count_tokens(block) <= SMALL_BLOCK_TOKENS or LIST_OR_TABLE.search(block):
                segments.append(block)
            else:
                sentences = SENTENCE.findall(block) or [block]
                segments.extend(s.strip() for s in sentences if s.strip())
        return segments

    def _split_with_overlap(self, body: str) -> List[str]:
        parts: List[str] = []
        current: List[str] = []
        current_tokens = 0
        overlap: List[str] = []

        for segment in self._segments(body):
            tokens = self.count_tokens(segment)
            if current and current_tokens + tokens > self.max_chunk_tokens:
                parts.append("\n\n".join(current))
                current = list(overlap)
                current_tokens = sum(self.count_tokens(s) for s in current)

            current.append(segment)
            current_tokens += tokens

            overlap.append(segment)
            while len(overlap) > 1 and sum(self.count_tokens(s) for s in overlap) > self.chunk_overlap:
                overlap.pop(0)

        if current:
            parts.append("\n\n".join(current))
        return parts
