"""Sentence and clause segmentation for sentence-level chamfer scoring."""
import logging
import re
from typing import List

logger = logging.getLogger(__name__)

# Sentence ends (. ! ?) followed by whitespace, or any run of newlines
SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])\s+|\n+")
CLAUSE_BOUNDARY = re.compile(r"[,;]|\s+(?:and|or|but|while|when|if)\s+", re.IGNORECASE)

MIN_SEGMENT_WORDS = 2


def _word_count(text: str) -> int:
    return len(text.split())


def split_into_sentences(text: str) -> List[str]:
    """
    Split text into sentences, treating every line as a boundary.

    Fragments shorter than two words (list markers, lone headings) are
    dropped. If nothing survives, the whole text is returned as one unit.
    """
    if not text or not text.strip():
        return []

    segments = [s.strip() for s in SENTENCE_BOUNDARY.split(text)]
    sentences = [s for s in segments if s and _word_count(s) >= MIN_SEGMENT_WORDS]

    if not sentences:
        return [text.strip()]

    logger.debug(f"Split {len(text)} chars into {len(sentences)} sentences")
    return sentences


def split_query_into_clauses(query: str) -> List[str]:
    """
    Split a query into the aspects it asks about.

    Queries rarely carry sentence punctuation, so commas, semicolons and
    conjunctions are the boundaries. A query with fewer than two clauses of
    at least two words is returned whole.
    """
    if not query or not query.strip():
        return []

    clauses = [c.strip() for c in CLAUSE_BOUNDARY.split(query)]
    clauses = [c for c in clauses if c and _word_count(c) >= MIN_SEGMENT_WORDS]

    if len(clauses) <= 1:
        return [query.strip()]
    return clauses
