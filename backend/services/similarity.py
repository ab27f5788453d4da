"""Vector similarity primitives using numpy."""
import logging
from typing import List, Sequence

import numpy as np

from models.errors import VectorError
from models.scores import SentenceChamferResult, SentenceMatch

logger = logging.getLogger(__name__)

Vector = Sequence[float]


def _as_pair(vec_a: Vector, vec_b: Vector):
    a = np.asarray(vec_a, dtype=float)
    b = np.asarray(vec_b, dtype=float)
    if a.shape != b.shape:
        raise VectorError(f"Vectors must have the same length ({a.size} != {b.size})")
    return a, b


def cosine_similarity(vec_a: Vector, vec_b: Vector) -> float:
    """
    Compute cosine similarity between two vectors.

    Args:
        vec_a: First vector
        vec_b: Second vector

    Returns:
        Cosine similarity score (-1 to 1)

    Raises:
        VectorError: If lengths differ or either vector has zero magnitude
    """
    a, b = _as_pair(vec_a, vec_b)

    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)
    if norm_a == 0 or norm_b == 0:
        raise VectorError("Cosine similarity is undefined for a zero vector")

    similarity = float(np.dot(a, b) / (norm_a * norm_b))
    # Floating point can overshoot the bounds by an ulp
    return max(-1.0, min(1.0, similarity))


def cosine_distance(vec_a: Vector, vec_b: Vector) -> float:
    """1 - cosine similarity, in [0, 2]."""
    return 1.0 - cosine_similarity(vec_a, vec_b)


def euclidean_distance(vec_a: Vector, vec_b: Vector) -> float:
    """L2 distance. Lower = more similar."""
    a, b = _as_pair(vec_a, vec_b)
    return float(np.linalg.norm(a - b))


def manhattan_distance(vec_a: Vector, vec_b: Vector) -> float:
    """L1 distance. Lower = more similar."""
    a, b = _as_pair(vec_a, vec_b)
    return float(np.abs(a - b).sum())


def dot_product(vec_a: Vector, vec_b: Vector) -> float:
    a, b = _as_pair(vec_a, vec_b)
    return float(np.dot(a, b))


def _similarity_matrix(set_a: Sequence[Vector], set_b: Sequence[Vector]) -> np.ndarray:
    """Pairwise cosine similarities, rows = set_a, columns = set_b."""
    a = np.asarray(set_a, dtype=float)
    b = np.asarray(set_b, dtype=float)
    if a.ndim != 2 or b.ndim != 2 or a.shape[1] != b.shape[1]:
        raise VectorError("All vectors must have the same dimensionality")

    norms_a = np.linalg.norm(a, axis=1, keepdims=True)
    norms_b = np.linalg.norm(b, axis=1, keepdims=True)
    if np.any(norms_a == 0) or np.any(norms_b == 0):
        raise VectorError("Cosine similarity is undefined for a zero vector")

    matrix = (a / norms_a) @ (b / norms_b).T
    return np.clip(matrix, -1.0, 1.0)


def chamfer_similarity(set_a: Sequence[Vector], set_b: Sequence[Vector]) -> float:
    """
    Bidirectional nearest-neighbour coverage between two sets of vectors.

    For every vector in set_a the best cosine match in set_b is taken, and
    vice versa; the mean of each direction is computed and the two directional
    means are averaged. A set compared with itself scores 1.

    Args:
        set_a: e.g. all chunk embeddings of a document
        set_b: e.g. all query embeddings

    Returns:
        Similarity in [-1, 1]; 0 when either set is empty
    """
    if len(set_a) == 0 or len(set_b) == 0:
        return 0.0

    matrix = _similarity_matrix(set_a, set_b)
    a_to_b = float(matrix.max(axis=1).mean())
    b_to_a = float(matrix.max(axis=0).mean())
    similarity = (a_to_b + b_to_a) / 2

    logger.debug(
        f"Chamfer similarity: {len(set_a)} x {len(set_b)} vectors -> {similarity:.4f}"
    )
    return similarity


def chamfer_distance(set_a: Sequence[Vector], set_b: Sequence[Vector]) -> float:
    """
    Chamfer distance over cosine distance: sum of both directional means.

    Ranges 0-4, lower = more similar.

    Raises:
        VectorError: If either set is empty
    """
    if len(set_a) == 0 or len(set_b) == 0:
        raise VectorError("Both sets must contain at least one vector")

    distances = 1.0 - _similarity_matrix(set_a, set_b)
    return float(distances.min(axis=1).mean() + distances.min(axis=0).mean())



def sentence_chamfer(
    sentence_vectors: Sequence[Vector],
    clause_vectors: Sequence[Vector],
    sentences: Sequence[str],
    clauses: Sequence[str]
) -> SentenceChamferResult:
    """
    Chamfer similarity between the sentences of a chunk and the clauses of a query.

    Same bidirectional mean as chamfer_similarity, reported per direction and
    with the best sentence for every clause as a diagnostic.

    Args:
        sentence_vectors: One embedding per chunk sentence
        clause_vectors: One embedding per query clause
        sentences: Sentence texts, aligned with sentence_vectors
        clauses: Clause texts, aligned with clause_vectors

    Raises:
        VectorError: If either set is empty, texts are misaligned or a vector is unusable
    """
    if len(sentence_vectors) == 0 or len(clause_vectors) == 0:
        raise VectorError("Both sets must contain at least one vector")
    if len(sentences) != len(sentence_vectors) or len(clauses) != len(clause_vectors):
        raise VectorError("Every vector needs its source text")

    matrix = _similarity_matrix(sentence_vectors, clause_vectors)
    chunk_focus = float(matrix.max(axis=1).mean())
    query_coverage = float(matrix.max(axis=0).mean())

    best_rows = matrix.argmax(axis=0)
    matches: List[SentenceMatch] = [
        SentenceMatch(
            query_clause=clause,
            sentence=sentences[int(row)],
            similarity=float(matrix[int(row), column]),
        )
        for column, (clause, row) in enumerate(zip(clauses, best_rows))
    ]

    return SentenceChamferResult(
        similarity=(chunk_focus + query_coverage) / 2,
        query_coverage=query_coverage,
        chunk_focus=chunk_focus,
        sentence_count=len(sentence_vectors),
        clause_count=len(clause_vectors),
        matches=matches,
    )
