"""Optimization pipeline state models."""
from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from models.assignment import QueryAssignmentMap
from models.errors import PipelineErrorKind
from models.optimization import FullOptimizationResult


class PipelineStep(str, Enum):
    """Nodes of the optimization state machine, in forward order."""
    IDLE = "idle"
    ANALYZING = "analyzing"
    OPTIMIZING = "optimizing"
    GENERATING_BRIEFS = "generating_briefs"
    SCORING = "scoring"
    EXPLAINING = "explaining"
    COMPLETE = "complete"
    ERROR = "error"


# Allowed predecessor -> successor edges. ERROR is reachable from every
# non-terminal step; IDLE is the only way out of COMPLETE and ERROR.
ALLOWED_TRANSITIONS: Dict[PipelineStep, FrozenSet[PipelineStep]] = {
    PipelineStep.IDLE: frozenset({PipelineStep.ANALYZING, PipelineStep.IDLE, PipelineStep.ERROR}),
    PipelineStep.ANALYZING: frozenset({PipelineStep.OPTIMIZING, PipelineStep.ERROR}),
    PipelineStep.OPTIMIZING: frozenset({
        PipelineStep.GENERATING_BRIEFS, PipelineStep.SCORING, PipelineStep.ERROR
    }),
    PipelineStep.GENERATING_BRIEFS: frozenset({PipelineStep.SCORING, PipelineStep.ERROR}),
    PipelineStep.SCORING: frozenset({PipelineStep.EXPLAINING, PipelineStep.ERROR}),
    PipelineStep.EXPLAINING: frozenset({PipelineStep.COMPLETE, PipelineStep.ERROR}),
    PipelineStep.COMPLETE: frozenset({PipelineStep.IDLE}),
    PipelineStep.ERROR: frozenset({PipelineStep.IDLE}),
}


def can_transition(current: PipelineStep, target: PipelineStep) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


@dataclass(frozen=True)
class PipelineState:
    """Snapshot of an optimization run. Replaced, never mutated."""
    step: PipelineStep = PipelineStep.IDLE
    progress: int = 0
    error: Optional[str] = None
    error_kind: Optional[PipelineErrorKind] = None
    result: Optional[FullOptimizationResult] = None

    def advance(self, step: PipelineStep, progress: Optional[int] = None) -> "PipelineState":
        if not can_transition(self.step, step):
            raise ValueError(f"Invalid pipeline transition: {self.step.value} -> {step.value}")
        return replace(self, step=step, progress=self.progress if progress is None else progress)

    def fail(self, message: str, kind: PipelineErrorKind) -> "PipelineState":
        """Move into ERROR. The partial result is dropped here and only here."""
        if not can_transition(self.step, PipelineStep.ERROR):
            raise ValueError(f"Invalid pipeline transition: {self.step.value} -> error")
        return PipelineState(
            step=PipelineStep.ERROR,
            progress=0,
            error=message,
            error_kind=kind,
            result=None,
        )

    def complete(self, result: FullOptimizationResult) -> "PipelineState":
        if not can_transition(self.step, PipelineStep.COMPLETE):
            raise ValueError(f"Invalid pipeline transition: {self.step.value} -> complete")
        return PipelineState(step=PipelineStep.COMPLETE, progress=100, result=result)

    def with_progress(self, progress: int) -> "PipelineState":
        # Progress never moves backwards within a run
        return replace(self, progress=max(self.progress, progress))

    def to_dict(self) -> dict:
        return {
            "step": self.step.value,
            "progress": self.progress,
            "error": self.error,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "result": self.result.model_dump(mode="json") if self.result else None,
        }


@dataclass(frozen=True)
class OptimizeOptions:
    """Caller input for one optimization run."""
    content: str
    queries: List[str]
    current_scores: Optional[Dict[str, float]] = None
    query_assignments: Optional[QueryAssignmentMap] = None
    chunks: Optional[List[str]] = None
    chunk_headings: Optional[List[Optional[str]]] = None
    use_focused_optimization: bool = False

    @property
    def focused(self) -> bool:
        return bool(
            self.use_focused_optimization
            and self.query_assignments is not None
            and self.chunks
        )
