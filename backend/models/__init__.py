"""Data models for the Passage Optimizer service."""
from .scores import SimilarityScores, FullScore, PassageScoreTier, SentenceMatch, SentenceChamferResult
from .chunk import ChunkingStrategy, Chunk, KeywordScore, ChunkScore, OriginalScore, ImprovementResult, AnalysisResult, SentenceStats
from .assignment import QueryAssignment, ChunkAssignment, QueryAssignmentMap, ChunkScoreInput
from .errors import (
    ProviderErrorCode,
    ProviderError,
    ProviderClientError,
    PipelineErrorKind,
    PipelineError,
    OptimizationInProgressError,
    VectorError,
)
from .pipeline import PipelineStep, PipelineState, OptimizeOptions
from .api import AnalyzeRequest, OptimizeRequest, AssignmentRequest, KeywordSuggestRequest

__all__ = [
    "SimilarityScores",
    "FullScore",
    "PassageScoreTier",
    "SentenceMatch",
    "SentenceChamferResult",
    "ChunkingStrategy",
    "Chunk",
    "KeywordScore",
    "ChunkScore",
    "OriginalScore",
    "ImprovementResult",
    "AnalysisResult",
    "SentenceStats",
    "QueryAssignment",
    "ChunkAssignment",
    "QueryAssignmentMap",
    "ChunkScoreInput",
    "ProviderErrorCode",
    "ProviderError",
    "ProviderClientError",
    "PipelineErrorKind",
    "PipelineError",
    "OptimizationInProgressError",
    "VectorError",
    "PipelineStep",
    "PipelineState",
    "OptimizeOptions",
    "AnalyzeRequest",
    "OptimizeRequest",
    "AssignmentRequest",
    "KeywordSuggestRequest",
]
