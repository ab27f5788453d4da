"""Query-to-chunk assignment data models."""
from dataclasses import dataclass, field
from typing import Dict, List, Optional


@dataclass(frozen=True)
class QueryAssignment:
    """One query routed to the chunk it scores best against."""
    query: str
    assigned_chunk_index: int
    score: float
    is_primary: bool


@dataclass(frozen=True)
class ChunkAssignment:
    """All queries routed to one chunk."""
    chunk_index: int
    chunk_preview: str
    assigned_queries: List[QueryAssignment]
    average_score: float
    chunk_heading: Optional[str] = None


@dataclass(frozen=True)
class QueryAssignmentMap:
    assignments: List[QueryAssignment]
    chunk_assignments: List[ChunkAssignment]
    unassigned_queries: List[str] = field(default_factory=list)

    def queries_for_chunk(self, chunk_index: int) -> List[str]:
        for chunk_assignment in self.chunk_assignments:
            if chunk_assignment.chunk_index == chunk_index:
                return [a.query for a in chunk_assignment.assigned_queries]
        return []


@dataclass(frozen=True)
class ChunkScoreInput:
    """Per-chunk scores the assignment is computed from."""
    chunk_index: int
    text: str
    scores: Dict[str, float]  # query -> Passage Score or cosine
    heading: Optional[str] = None
