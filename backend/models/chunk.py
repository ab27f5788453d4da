"""Chunk data models."""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict

from models.scores import SimilarityScores


class ChunkingStrategy(str, Enum):
    PARAGRAPH = "paragraph"
    SEMANTIC = "semantic"
    FIXED = "fixed"
    LAYOUT_AWARE = "layout_aware"


@dataclass(frozen=True)
class Chunk:
    """Represents one addressable unit of document content."""
    chunk_id: str  # Format: "chunk-{index}"
    index: int
    text: str  # Text used for embedding (includes heading cascade when present)
    word_count: int
    char_count: int
    text_without_cascade: Optional[str] = None
    heading_path: List[str] = field(default_factory=list)
    token_count: int = 0

    @property
    def heading(self) -> Optional[str]:
        """The innermost heading of this chunk, if any."""
        return self.heading_path[-1] if self.heading_path else None


@dataclass(frozen=True)
class KeywordScore:
    """Similarity of one text against one keyword."""
    keyword: str
    scores: SimilarityScores


@dataclass(frozen=True)
class ChunkScore:
    """Scores of one chunk against every keyword of an analysis run."""
    chunk_id: str
    chunk_index: int
    text: str
    word_count: int
    char_count: int
    keyword_scores: List[KeywordScore]

    def score_for(self, keyword: str) -> Optional[SimilarityScores]:
        for keyword_score in self.keyword_scores:
            if keyword_score.keyword == keyword:
                return keyword_score.scores
        return None

    def cosine_by_keyword(self) -> Dict[str, float]:
        return {ks.keyword: ks.scores.cosine for ks in self.keyword_scores}


@dataclass(frozen=True)
class OriginalScore:
    """Scores of the whole, unchunked document."""
    text: str
    keyword_scores: List[KeywordScore]


@dataclass(frozen=True)
class ImprovementResult:
    """Percentage deltas between a reference score and a chunk score."""
    chunk_id: str
    keyword: str
    cosine_improvement: float
    euclidean_improvement: float
    chamfer_improvement: float


@dataclass(frozen=True)
class SentenceStats:
    """How much text the sentence-level chamfer mode embedded."""
    total_chunk_sentences: int
    total_query_clauses: int
    avg_sentences_per_chunk: float


@dataclass(frozen=True)
class AnalysisResult:
    """Output of a single-shot analysis run."""
    original_scores: OriginalScore
    chunk_scores: List[ChunkScore]
    no_cascade_scores: Optional[List[ChunkScore]]
    optimized_scores: Optional[List[ChunkScore]]
    improvements: List[ImprovementResult]
    timestamp: datetime
    sentence_stats: Optional[SentenceStats] = None
