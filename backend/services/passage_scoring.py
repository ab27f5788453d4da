"""
Passage Score calculation.

The Passage Score is the single 0-100 retrieval-quality metric of the
service. It blends two signals:

- Cosine (70%): chunk-level relevance, how well THIS chunk matches the query
- Chamfer (30%): document-level coverage, how well the WHOLE document covers
  all queries. Every chunk scored in the same batch shares one chamfer value.

Score interpretation:
- 90-100: Excellent (likely top 5 results)
- 75-89:  Good (likely top 10 results)
- 60-74:  Moderate (competitive)
- 40-59:  Weak (depends on competition)
- 0-39:   Poor (likely filtered out)
"""
import logging
import math
from typing import Dict, Optional, Sequence

from models.errors import VectorError
from models.scores import FullScore, PassageScoreTier, SimilarityScores
from services.similarity import (
    cosine_similarity,
    dot_product,
    euclidean_distance,
    manhattan_distance,
)

logger = logging.getLogger(__name__)

COSINE_WEIGHT = 0.7
CHAMFER_WEIGHT = 0.3

# Lower bound of each tier, highest first
TIER_BREAKPOINTS = (
    (90.0, PassageScoreTier.EXCELLENT),
    (75.0, PassageScoreTier.GOOD),
    (60.0, PassageScoreTier.MODERATE),
    (40.0, PassageScoreTier.WEAK),
)

# Reported when a score rises from exactly zero; the ratio is undefined there
NEW_COVERAGE_IMPROVEMENT = 100.0

_INTERPRETATIONS: Dict[PassageScoreTier, str] = {
    PassageScoreTier.EXCELLENT: "High retrieval probability. Very likely to make top 5 results in RAG systems.",
    PassageScoreTier.GOOD: "Good retrieval probability. Strong candidate for top 10 results.",
    PassageScoreTier.MODERATE: "Moderate retrieval probability. Competitive but depends on other content.",
    PassageScoreTier.WEAK: "Weak retrieval probability. May be retrieved if competition is low.",
    PassageScoreTier.POOR: "Poor retrieval probability. Likely filtered out during initial retrieval.",
}

_RECOMMENDATIONS: Dict[PassageScoreTier, str] = {
    PassageScoreTier.EXCELLENT: "Content is well-optimized. Monitor for changes and maintain quality.",
    PassageScoreTier.GOOD: "Content performs well. Consider minor improvements to reach excellent tier.",
    PassageScoreTier.MODERATE: "Optimize passage boundaries, add context, or improve semantic relevance.",
    PassageScoreTier.WEAK: "Significant restructuring needed. Review heading hierarchy and passage atomicity.",
    PassageScoreTier.POOR: "Major optimization required. Content may not be relevant to query or poorly structured.",
}


def _clamp_unit(value: float) -> float:
    return max(0.0, min(1.0, value))


def _round_half_up(value: float) -> float:
    # Halves round up, so a score landing on x.5 reaches the tier above
    return float(math.floor(value + 0.5))


def calculate_passage_score(cosine: float, chamfer: float) -> float:
    """
    Combine chunk cosine and document chamfer into a Passage Score.

    Both inputs are clamped to [0, 1] before weighting, so the result is
    always within [0, 100]. The score is rounded to a whole number, halves
    rounding up.

    Args:
        cosine: Chunk-level cosine similarity
        chamfer: Document-level chamfer similarity

    Returns:
        Passage Score (0-100)
    """
    weighted = _clamp_unit(cosine) * COSINE_WEIGHT + _clamp_unit(chamfer) * CHAMFER_WEIGHT
    return _round_half_up(weighted * 100)


def get_passage_score_tier(score: float) -> PassageScoreTier:
    """Map any real score to exactly one tier."""
    for lower_bound, tier in TIER_BREAKPOINTS:
        if score >= lower_bound:
            return tier
    return PassageScoreTier.POOR


def get_passage_score_interpretation(score: float) -> str:
    return _INTERPRETATIONS[get_passage_score_tier(score)]


def get_passage_score_recommendation(score: float) -> str:
    return _RECOMMENDATIONS[get_passage_score_tier(score)]


def calculate_improvement(original_score: float, new_score: float) -> float:
    """
    Percentage change from original_score to new_score.

    When the original score is exactly zero the ratio is undefined: a rise to
    a positive score reports NEW_COVERAGE_IMPROVEMENT, anything else reports 0.
    Never returns inf or NaN.
    """
    if original_score == 0:
        return NEW_COVERAGE_IMPROVEMENT if new_score > 0 else 0.0

    improvement = (new_score - original_score) / abs(original_score) * 100
    if not math.isfinite(improvement):
        return 0.0
    return improvement


def score_pair(
    content_vector: Optional[Sequence[float]],
    query_vector: Optional[Sequence[float]],
    document_chamfer: float
) -> Optional[FullScore]:
    """
    Cosine, shared document chamfer and Passage Score for one cell.

    Returns None when either vector is missing, empty, zero or of the wrong
    length so the caller can record the cell as a data-integrity zero.
    """
    if content_vector is None or query_vector is None:
        return None
    if len(content_vector) == 0 or len(query_vector) == 0:
        return None

    try:
        cosine = cosine_similarity(content_vector, query_vector)
    except VectorError as e:
        logger.warning(f"Unusable embedding pair: {e}")
        return None

    return FullScore(
        cosine=cosine,
        chamfer=document_chamfer,
        passage_score=calculate_passage_score(cosine, document_chamfer),
    )


def calculate_all_metrics(
    vec_a: Sequence[float],
    vec_b: Sequence[float],
    document_chamfer: Optional[float] = None
) -> SimilarityScores:
    """
    Calculate every pair metric between two vectors.

    Chamfer is the supplied document-level value, or the cosine when only the
    two single vectors are compared (a one-element set on each side).
    """
    cosine = cosine_similarity(vec_a, vec_b)
    chamfer = cosine if document_chamfer is None else document_chamfer

    return SimilarityScores(
        cosine=cosine,
        euclidean=euclidean_distance(vec_a, vec_b),
        chamfer=chamfer,
        manhattan=manhattan_distance(vec_a, vec_b),
        dot_product=dot_product(vec_a, vec_b),
        passage_score=calculate_passage_score(cosine, chamfer),
    )


def format_score(score: float, decimals: int = 4) -> str:
    return f"{score:.{decimals}f}"


def format_improvement(improvement: float) -> str:
    sign = "+" if improvement >= 0 else ""
    return f"{sign}{improvement:.2f}%"
