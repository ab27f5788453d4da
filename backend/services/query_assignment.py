"""Query-to-chunk assignment: which chunk each query should be optimized in."""
import logging
from collections import OrderedDict
from dataclasses import replace
from typing import Dict, List, Sequence

from config import ASSIGNMENT_MIN_SCORE
from models.assignment import ChunkAssignment, ChunkScoreInput, QueryAssignment, QueryAssignmentMap

logger = logging.getLogger(__name__)

PREVIEW_CHARS = 150


def _preview(text: str) -> str:
    return text[:PREVIEW_CHARS] + ("..." if len(text) > PREVIEW_CHARS else "")


def compute_query_assignments(
    chunk_scores: Sequence[ChunkScoreInput],
    queries: Sequence[str],
    min_score: float = ASSIGNMENT_MIN_SCORE
) -> QueryAssignmentMap:
    """
    Assign every query to the chunk it scores highest in.

    A query whose best score is below min_score (or that no chunk scores
    above zero) is reported as unassigned. The first query is the primary one.

    Args:
        chunk_scores: Per-chunk scores, positionally indexed
        queries: Query strings, primary first
        min_score: Minimum score for a valid assignment

    Returns:
        QueryAssignmentMap
    """
    assignments: List[QueryAssignment] = []
    unassigned: List[str] = []

    for query_index, query in enumerate(queries):
        best_index = -1
        best_score = 0.0
        for position, chunk in enumerate(chunk_scores):
            score = chunk.scores.get(query, 0.0)
            if score > best_score:
                best_score = score
                best_index = position

        if best_index >= 0 and best_score >= min_score:
            assignments.append(QueryAssignment(
                query=query,
                assigned_chunk_index=best_index,
                score=best_score,
                is_primary=query_index == 0,
            ))
        else:
            unassigned.append(query)

    if unassigned:
        logger.info(f"{len(unassigned)} of {len(queries)} queries have no chunk scoring >= {min_score}")

    return QueryAssignmentMap(
        assignments=assignments,
        chunk_assignments=_group_by_chunk(chunk_scores, assignments),
        unassigned_queries=unassigned,
    )


def _group_by_chunk(
    chunk_scores: Sequence[ChunkScoreInput],
    assignments: Sequence[QueryAssignment]
) -> List[ChunkAssignment]:
    grouped: Dict[int, List[QueryAssignment]] = OrderedDict()
    for assignment in assignments:
        grouped.setdefault(assignment.assigned_chunk_index, []).append(assignment)

    result = []
    for position, chunk_queries in grouped.items():
        if position < 0 or position >= len(chunk_scores):
            continue
        chunk = chunk_scores[position]
        ordered = sorted(chunk_queries, key=lambda a: (not a.is_primary, -a.score))
        result.append(ChunkAssignment(
            chunk_index=position,
            chunk_preview=_preview(chunk.text),
            assigned_queries=ordered,
            average_score=sum(a.score for a in ordered) / len(ordered),
            chunk_heading=chunk.heading,
        ))

    return sorted(result, key=lambda c: c.chunk_index)


def reassign_query(
    assignment_map: QueryAssignmentMap,
    query: str,
    new_chunk_index: int,
    chunk_scores: Sequence[ChunkScoreInput],
    queries: Sequence[str] = ()
) -> QueryAssignmentMap:
    """
    Move a query to another chunk, returning a new map.

    The score is looked up for the new chunk. An unassigned query becomes
    assigned. `queries` decides whether a newly assigned query is primary.
    """
    if new_chunk_index < 0 or new_chunk_index >= len(chunk_scores):
        raise ValueError(f"Chunk index {new_chunk_index} out of range (0-{len(chunk_scores) - 1})")

    new_score = chunk_scores[new_chunk_index].scores.get(query, 0.0)
    assignments = [
        replace(a, assigned_chunk_index=new_chunk_index, score=new_score) if a.query == query else a
        for a in assignment_map.assignments
    ]

    if not any(a.query == query for a in assignment_map.assignments):
        assignments.append(QueryAssignment(
            query=query,
            assigned_chunk_index=new_chunk_index,
            score=new_score,
            is_primary=bool(queries) and queries[0] == query,
        ))

    logger.debug(f"Reassigned query '{query}' to chunk {new_chunk_index}")
    return QueryAssignmentMap(
        assignments=assignments,
        chunk_assignments=_group_by_chunk(chunk_scores, assignments),
        unassigned_queries=[q for q in assignment_map.unassigned_queries if q != query],
    )
