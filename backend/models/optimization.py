"""
Optimization data models.

The provider-facing models (ContentAnalysis, OptimizationResult,
ExplanationsResult, ContentBrief, SummaryResult, KeywordSuggestions) double as
the output schemas of the generative provider: the LLM client validates every
structured response against them. The result models are frozen once built.
"""
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from models.scores import FullScore, PassageScoreTier


class ChangeType(str, Enum):
    SPLIT_PARAGRAPH = "split_paragraph"
    ADD_HEADING = "add_heading"
    REPLACE_PRONOUN = "replace_pronoun"
    ADD_CONTEXT = "add_context"
    REORDER_SENTENCES = "reorder_sentences"


class Priority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


# ---------------------------------------------------------------------------
# Analysis stage
# ---------------------------------------------------------------------------

class TopicSegment(BaseModel):
    start_pos: int
    end_pos: int
    topic: str
    related_queries: List[str] = Field(default_factory=list)


class OptimizationOpportunity(BaseModel):
    type: ChangeType
    position: int
    priority: Priority
    affected_queries: List[str] = Field(default_factory=list)
    expected_impact: Optional[str] = None
    reasoning: str


class ContentAnalysis(BaseModel):
    topic_segments: List[TopicSegment]
    optimization_opportunities: List[OptimizationOpportunity]


# ---------------------------------------------------------------------------
# Rewrite stage
# ---------------------------------------------------------------------------

class Change(BaseModel):
    change_id: str
    change_type: ChangeType
    before: str
    after: str
    reason: str
    expected_improvement: str


class OptimizedChunk(BaseModel):
    chunk_number: int
    heading: Optional[str] = None
    original_text: str
    optimized_text: str
    changes_applied: List[Change] = Field(default_factory=list)


class OptimizationResult(BaseModel):
    optimized_chunks: List[OptimizedChunk]


class ActualScores(BaseModel):
    """Measured (not claimed) effect of a change on its target query."""
    model_config = ConfigDict(frozen=True)

    query: str
    new_score: float
    improvement_pct: float


class ValidatedChange(Change):
    model_config = ConfigDict(frozen=True)

    actual_scores: ActualScores


class ValidatedChunk(BaseModel):
    model_config = ConfigDict(frozen=True)

    chunk_number: int
    heading: Optional[str] = None
    original_text: str
    optimized_text: str
    changes_applied: List[ValidatedChange]
    scores: Dict[str, float]  # query -> optimized cosine


# ---------------------------------------------------------------------------
# Explanation stage
# ---------------------------------------------------------------------------

class ChangeExplanation(BaseModel):
    change_id: str
    title: str
    explanation: str
    impact_summary: str
    trade_offs: Optional[str] = None


class ExplanationsResult(BaseModel):
    explanations: List[ChangeExplanation]


# ---------------------------------------------------------------------------
# Gap briefs
# ---------------------------------------------------------------------------

class TargetWordCount(BaseModel):
    min: int = 300
    max: int = 500


class ContentBrief(BaseModel):
    """Outline for new content answering a query no existing chunk covers."""
    target_query: str
    suggested_heading: str
    heading_level: str = "h2"
    placement_description: str
    key_points: List[str] = Field(default_factory=list)
    target_word_count: TargetWordCount = Field(default_factory=TargetWordCount)
    draft_opening: str = ""
    gap_analysis: str = ""


class ChunkSummaryInput(BaseModel):
    """Short description of an existing chunk, given to brief generation."""
    index: int
    heading: Optional[str] = None
    preview: str


# ---------------------------------------------------------------------------
# Summary stage
# ---------------------------------------------------------------------------

class QueryScoreData(BaseModel):
    """Before/after arithmetic for one (chunk, query) cell."""
    query: str
    original: float  # cosine
    optimized: float  # cosine
    percent_change: float
    original_passage_score: float
    optimized_passage_score: float
    passage_score_change: float
    original_tier: PassageScoreTier
    optimized_tier: PassageScoreTier
    original_chamfer: float
    optimized_chamfer: float


class ChunkScoreData(BaseModel):
    chunk_number: int
    heading: Optional[str] = None
    scores: List[QueryScoreData]


class RagExplanation(BaseModel):
    chunk_number: int
    query: str
    explanation: str


class FurtherSuggestion(BaseModel):
    suggestion: str
    expected_impact: str
    reasoning: str


class TradeOffConsideration(BaseModel):
    category: str
    concern: str
    severity: Priority


class SummaryResult(BaseModel):
    """Raw structured output of the summary call."""
    rag_explanations: List[RagExplanation] = Field(default_factory=list)
    further_suggestions: List[FurtherSuggestion] = Field(default_factory=list)
    trade_off_considerations: List[TradeOffConsideration] = Field(default_factory=list)


class QueryScoreDetail(BaseModel):
    model_config = ConfigDict(frozen=True)

    query: str
    original_cosine: float
    optimized_cosine: float
    percent_change: float
    original_passage_score: float
    optimized_passage_score: float
    rag_impact_explanation: str


class ChunkScoreSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    chunk_number: int
    heading: Optional[str] = None
    query_scores: List[QueryScoreDetail]
    overall_improvement: float


class OptimizationSummary(BaseModel):
    """Same shape whether built from the provider's output or arithmetically."""
    model_config = ConfigDict(frozen=True)

    chunk_scores: List[ChunkScoreSummary]
    overall_original_avg: float
    overall_optimized_avg: float
    overall_percent_change: float
    overall_original_passage_avg: float
    overall_optimized_passage_avg: float
    further_suggestions: List[FurtherSuggestion] = Field(default_factory=list)
    trade_off_considerations: List[TradeOffConsideration] = Field(default_factory=list)
    is_fallback: bool = False


# ---------------------------------------------------------------------------
# Keyword suggestion
# ---------------------------------------------------------------------------

class SearchIntent(str, Enum):
    INFORMATIONAL = "informational"
    NAVIGATIONAL = "navigational"
    TRANSACTIONAL = "transactional"
    COMMERCIAL = "commercial"


class KeywordSuggestion(BaseModel):
    keyword: str
    reason: str
    intent: SearchIntent


class KeywordSuggestions(BaseModel):
    keywords: List[KeywordSuggestion]


# ---------------------------------------------------------------------------
# Whole run
# ---------------------------------------------------------------------------

class FullOptimizationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    analysis: ContentAnalysis
    optimized_chunks: List[ValidatedChunk]
    explanations: List[ChangeExplanation]
    original_content: str
    timestamp: datetime
    summary: OptimizationSummary
    chunk_score_data: List[ChunkScoreData]
    original_full_scores: Dict[int, Dict[str, FullScore]]
    optimized_full_scores: Dict[int, Dict[str, FullScore]]
    original_document_chamfer: float
    optimized_document_chamfer: float
    content_briefs: List[ContentBrief] = Field(default_factory=list)
