"""Attach measured scores to the changes a rewrite claims to have made."""
import logging
from typing import Dict, Sequence

from models.optimization import ActualScores, OptimizedChunk, ValidatedChange, ValidatedChunk
from models.scores import FullScore
from services.passage_scoring import calculate_improvement

logger = logging.getLogger(__name__)


def find_target_query(expected_improvement: str, queries: Sequence[str]) -> str:
    """
    The query a change claims to improve.

    The first query whose text appears (case-insensitively) in the claim,
    otherwise the first query.
    """
    if not queries:
        raise ValueError("At least one query is required to validate changes")

    claim = (expected_improvement or "").lower()
    for query in queries:
        if query.lower() in claim:
            return query
    return queries[0]


def validate_chunk(
    chunk: OptimizedChunk,
    queries: Sequence[str],
    original_scores: Dict[str, FullScore],
    optimized_scores: Dict[str, FullScore]
) -> ValidatedChunk:
    """
    Decorate every change of a rewritten chunk with the measured cosine delta.

    Args:
        chunk: Rewrite as returned by the provider
        queries: All queries of the run, primary first
        original_scores: query -> score of the original chunk body
        optimized_scores: query -> score of the rewritten chunk body

    Returns:
        ValidatedChunk whose scores map each query to the optimized cosine
    """
    zero = FullScore.zero()
    changes = []
    for change in chunk.changes_applied:
        target = find_target_query(change.expected_improvement, queries)
        new_score = optimized_scores.get(target, zero).cosine
        old_score = original_scores.get(target, zero).cosine
        changes.append(ValidatedChange(
            **change.model_dump(),
            actual_scores=ActualScores(
                query=target,
                new_score=new_score,
                improvement_pct=calculate_improvement(old_score, new_score),
            ),
        ))

    logger.debug(f"Validated {len(changes)} changes for chunk {chunk.chunk_number}")
    return ValidatedChunk(
        chunk_number=chunk.chunk_number,
        heading=chunk.heading,
        original_text=chunk.original_text,
        optimized_text=chunk.optimized_text,
        changes_applied=changes,
        scores={q: optimized_scores.get(q, zero).cosine for q in queries},
    )
