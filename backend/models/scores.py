"""Score data models."""
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


class PassageScoreTier(str, Enum):
    """Ordered quality bands derived from a Passage Score."""
    EXCELLENT = "excellent"
    GOOD = "good"
    MODERATE = "moderate"
    WEAK = "weak"
    POOR = "poor"


@dataclass(frozen=True)
class SentenceMatch:
    """Best chunk sentence for one query clause."""
    query_clause: str
    sentence: str
    similarity: float


@dataclass(frozen=True)
class SentenceChamferResult:
    """
    Multi-vector chamfer between the sentences of a chunk and the clauses of a query.

    query_coverage is the mean best match of every clause (is each aspect of
    the query answered somewhere), chunk_focus the mean best match of every
    sentence (does the chunk stay on the query). similarity averages the two.
    """
    similarity: float
    query_coverage: float
    chunk_focus: float
    sentence_count: int
    clause_count: int
    matches: List[SentenceMatch] = field(default_factory=list)


@dataclass(frozen=True)
class SimilarityScores:
    """All metrics for one (content vector, query vector) pair."""
    cosine: float
    euclidean: float
    chamfer: float
    manhattan: float = 0.0
    dot_product: float = 0.0
    passage_score: float = 0.0
    sentence_chamfer: Optional[SentenceChamferResult] = None  # set in sentence-level mode only


@dataclass(frozen=True)
class FullScore:
    """The cosine / chamfer / Passage Score triple used by the optimizer."""
    cosine: float
    chamfer: float
    passage_score: float

    @classmethod
    def zero(cls) -> "FullScore":
        return cls(cosine=0.0, chamfer=0.0, passage_score=0.0)
