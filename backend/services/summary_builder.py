"""
Before/after score arithmetic and the optimization summary.

The summary has one shape whether the narrative comes from the generative
provider or not: every number in it is computed here from chunk_score_data,
the provider only contributes explanation text and advisory lists.
"""
import logging
from typing import Dict, List, Optional, Sequence

from models.optimization import (
    ChunkScoreData,
    ChunkScoreSummary,
    OptimizationSummary,
    QueryScoreData,
    QueryScoreDetail,
    SummaryResult,
    ValidatedChunk,
)
from models.scores import FullScore
from services.passage_scoring import calculate_improvement, get_passage_score_tier

logger = logging.getLogger(__name__)

SIGNIFICANT_CHANGE_PCT = 10.0


def default_rag_explanation(percent_change: float) -> str:
    """Canned explanation of a score change, by band."""
    if percent_change > SIGNIFICANT_CHANGE_PCT:
        return ("Significant Passage Score improvement. This chunk now has stronger semantic match "
                "and better multi-aspect coverage, making it more likely to be retrieved.")
    if percent_change > 0:
        return ("Moderate Passage Score improvement. The optimized text better balances semantic "
                "relevance and query facet coverage.")
    if percent_change < -SIGNIFICANT_CHANGE_PCT:
        return ("Passage Score decreased significantly. Review the changes to ensure key terms "
                "and context weren't removed.")
    if percent_change < 0:
        return ("Slight Passage Score decrease. This may be acceptable if other queries improved "
                "or tier position is maintained.")
    return "Passage Score remained stable. The content was already well-optimized for this query."


def build_chunk_score_data(
    validated_chunks: Sequence[ValidatedChunk],
    queries: Sequence[str],
    original_full_scores: Dict[int, Dict[str, FullScore]],
    optimized_full_scores: Dict[int, Dict[str, FullScore]]
) -> List[ChunkScoreData]:
    """Per chunk, per query before/after numbers. Missing cells count as zero."""
    zero = FullScore.zero()
    data = []
    for position, chunk in enumerate(validated_chunks):
        scores = []
        for query in queries:
            original = original_full_scores.get(position, {}).get(query, zero)
            optimized = optimized_full_scores.get(position, {}).get(query, zero)
            scores.append(QueryScoreData(
                query=query,
                original=original.cosine,
                optimized=optimized.cosine,
                percent_change=calculate_improvement(original.cosine, optimized.cosine),
                original_passage_score=original.passage_score,
                optimized_passage_score=optimized.passage_score,
                passage_score_change=optimized.passage_score - original.passage_score,
                original_tier=get_passage_score_tier(original.passage_score),
                optimized_tier=get_passage_score_tier(optimized.passage_score),
                original_chamfer=original.chamfer,
                optimized_chamfer=optimized.chamfer,
            ))
        data.append(ChunkScoreData(chunk_number=chunk.chunk_number, heading=chunk.heading, scores=scores))
    return data


def _mean(values: List[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _summarize(
    chunk_score_data: Sequence[ChunkScoreData],
    explanations: Dict[tuple, str],
    ai_result: Optional[SummaryResult]
) -> OptimizationSummary:
    chunk_scores = []
    for chunk in chunk_score_data:
        query_scores = [
            QueryScoreDetail(
                query=qs.query,
                original_cosine=qs.original,
                optimized_cosine=qs.optimized,
                percent_change=qs.percent_change,
                original_passage_score=qs.original_passage_score,
                optimized_passage_score=qs.optimized_passage_score,
                rag_impact_explanation=explanations.get(
                    (chunk.chunk_number, qs.query), default_rag_explanation(qs.percent_change)
                ),
            )
            for qs in chunk.scores
        ]
        chunk_scores.append(ChunkScoreSummary(
            chunk_number=chunk.chunk_number,
            heading=chunk.heading,
            query_scores=query_scores,
            overall_improvement=_mean([qs.percent_change for qs in query_scores]),
        ))

    cells = [qs for chunk in chunk_score_data for qs in chunk.scores]
    original_avg = _mean([qs.original for qs in cells])
    optimized_avg = _mean([qs.optimized for qs in cells])

    return OptimizationSummary(
        chunk_scores=chunk_scores,
        overall_original_avg=original_avg,
        overall_optimized_avg=optimized_avg,
        overall_percent_change=calculate_improvement(original_avg, optimized_avg),
        overall_original_passage_avg=_mean([qs.original_passage_score for qs in cells]),
        overall_optimized_passage_avg=_mean([qs.optimized_passage_score for qs in cells]),
        further_suggestions=list(ai_result.further_suggestions) if ai_result else [],
        trade_off_considerations=list(ai_result.trade_off_considerations) if ai_result else [],
        is_fallback=ai_result is None,
    )


def build_summary_from_ai(
    chunk_score_data: Sequence[ChunkScoreData],
    ai_result: SummaryResult
) -> OptimizationSummary:
    """Summary numbers from the score data, narrative from the provider."""
    explanations = {
        (e.chunk_number, e.query): e.explanation
        for e in ai_result.rag_explanations
        if e.explanation
    }
    logger.debug(f"Summary uses {len(explanations)} provider explanations")
    return _summarize(chunk_score_data, explanations, ai_result)


def build_fallback_summary(chunk_score_data: Sequence[ChunkScoreData]) -> OptimizationSummary:
    """Fully deterministic summary used when the provider summary is unavailable."""
    return _summarize(chunk_score_data, {}, None)
