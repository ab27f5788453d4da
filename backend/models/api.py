"""API request models for the Passage Optimizer service."""
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from config import MAX_SENTENCES_PER_CHUNK
from models.assignment import ChunkScoreInput, QueryAssignmentMap
from models.chunk import ChunkingStrategy
from models.pipeline import OptimizeOptions


class AnalyzeRequest(BaseModel):
    """Request model for the /analyze endpoint."""
    content: str = Field(..., description="Content to score")
    keywords: List[str] = Field(..., description="Target keywords or queries")
    strategy: ChunkingStrategy = Field(default=ChunkingStrategy.PARAGRAPH)
    optimized_content: Optional[str] = Field(
        default=None, description="Rewritten content to score alongside the original"
    )
    compare_cascade: bool = Field(
        default=True, description="Also score layout-aware chunks without their heading cascade"
    )
    sentence_chamfer: bool = Field(
        default=False, description="Score chunk chamfer from sentence and query-clause embeddings"
    )
    max_sentences_per_chunk: int = Field(default=MAX_SENTENCES_PER_CHUNK, ge=1)


class OptimizeRequest(BaseModel):
    """Request model for the /optimize endpoints."""
    session_id: str = Field(default="default", min_length=1)
    content: str
    queries: List[str] = Field(..., description="Queries to optimize for, primary first")
    current_scores: Optional[Dict[str, float]] = None
    chunks: Optional[List[str]] = None
    chunk_headings: Optional[List[Optional[str]]] = None
    use_focused_optimization: bool = False
    query_assignments: Optional[QueryAssignmentMap] = None

    def to_options(self) -> OptimizeOptions:
        return OptimizeOptions(
            content=self.content,
            queries=list(self.queries),
            current_scores=self.current_scores,
            query_assignments=self.query_assignments,
            chunks=self.chunks,
            chunk_headings=self.chunk_headings,
            use_focused_optimization=self.use_focused_optimization,
        )


class AssignmentRequest(BaseModel):
    """Request model for the /assignments endpoint."""
    chunk_scores: List[ChunkScoreInput]
    queries: List[str]
    min_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class KeywordSuggestRequest(BaseModel):
    """Request model for the /keywords/suggest endpoint."""
    content: str
