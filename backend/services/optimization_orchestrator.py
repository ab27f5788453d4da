"""
Optimization pipeline orchestrator.

Runs analyze -> rewrite (focused or global) -> gap briefs -> re-score ->
explain -> summarize for one session at a time, publishing an immutable
PipelineState snapshot on every transition.

Failure handling per stage:
- analyze, rewrite, scoring embeddings, explain: fatal, the run ends in ERROR
- briefs: per item, a failed brief is dropped
- summary: the arithmetic fallback summary is used instead
- a missing embedding: that (chunk, query) cell scores zero
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Set, TypeVar

from config import (
    BRIEF_BATCH_DELAY_SECONDS,
    BRIEF_BATCH_SIZE,
    BRIEF_MAX_RETRIES,
    STAGE_TIMEOUT_SECONDS,
)
from models.errors import (
    OptimizationInProgressError,
    PipelineError,
    PipelineErrorKind,
    ProviderClientError,
    ProviderErrorCode,
    VectorError,
)
from models.optimization import (
    ChunkSummaryInput,
    ContentBrief,
    FullOptimizationResult,
    OptimizationResult,
    OptimizationSummary,
    OptimizedChunk,
    ChunkScoreData,
    ValidatedChunk,
)
from models.pipeline import OptimizeOptions, PipelineState, PipelineStep, can_transition
from models.scores import FullScore
from services.batch_runner import run_in_batches
from services.change_validator import validate_chunk
from services.embedding_model import EmbeddingBatch, EmbeddingModel
from services.llm_client import LLMClient
from services.passage_scoring import score_pair
from services.prompt_builder import split_heading
from services.similarity import chamfer_similarity
from services.summary_builder import (
    build_chunk_score_data,
    build_fallback_summary,
    build_summary_from_ai,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

StateListener = Callable[[str, PipelineState], None]

CANCELLED_MESSAGE = "Optimization cancelled"
BRIEF_PREVIEW_CHARS = 200

# Progress checkpoints
PROGRESS_ANALYZING = 10
PROGRESS_OPTIMIZING = 30
PROGRESS_BRIEFS = 40
PROGRESS_SCORING = 50
PROGRESS_SCORED = 70
PROGRESS_EXPLAINING = 80
PROGRESS_SUMMARIZING = 90

_PROTOCOL_CODES = frozenset({ProviderErrorCode.TRUNCATED_RESPONSE, ProviderErrorCode.MALFORMED_RESPONSE})


@dataclass(frozen=True)
class ScoringResult:
    original_full_scores: Dict[int, Dict[str, FullScore]]
    optimized_full_scores: Dict[int, Dict[str, FullScore]]
    original_document_chamfer: float
    optimized_document_chamfer: float


def document_chamfer(content_vectors: Sequence[Optional[List[float]]], query_vectors: Sequence[Optional[List[float]]]) -> float:
    """Whole-document coverage over the usable vectors of one version."""
    content = [v for v in content_vectors if v]
    queries = [v for v in query_vectors if v]
    try:
        return chamfer_similarity(content, queries)
    except VectorError as e:
        logger.warning(f"Document chamfer unavailable, using 0: {e}")
        return 0.0


class OptimizationOrchestrator:
    """Owns the pipeline state of every session and runs optimizations."""

    def __init__(
        self,
        llm_client: LLMClient,
        embedding_model: EmbeddingModel,
        stage_timeout: float = STAGE_TIMEOUT_SECONDS,
        brief_batch_size: int = BRIEF_BATCH_SIZE,
        brief_batch_delay: float = BRIEF_BATCH_DELAY_SECONDS,
        brief_max_retries: int = BRIEF_MAX_RETRIES
    ):
        self.llm_client = llm_client
        self.embedding_model = embedding_model
        self.stage_timeout = stage_timeout
        self.brief_batch_size = brief_batch_size
        self.brief_batch_delay = brief_batch_delay
        self.brief_max_retries = brief_max_retries

        self._states: Dict[str, PipelineState] = {}
        self._in_flight: Set[str] = set()
        self._cancel_events: Dict[str, asyncio.Event] = {}
        self._listeners: Dict[str, List[StateListener]] = {}

    # ------------------------------------------------------------------
    # Session state
    # ------------------------------------------------------------------

    def get_state(self, session_id: str) -> PipelineState:
        return self._states.get(session_id, PipelineState())

    def is_running(self, session_id: str) -> bool:
        return session_id in self._in_flight

    def subscribe(self, session_id: str, listener: StateListener) -> Callable[[], None]:
        """Call listener with every new state of the session. Returns an unsubscribe function."""
        self._listeners.setdefault(session_id, []).append(listener)

        def unsubscribe():
            listeners = self._listeners.get(session_id, [])
            if listener in listeners:
                listeners.remove(listener)
            if not listeners:
                self._listeners.pop(session_id, None)

        return unsubscribe

    def cancel(self, session_id: str) -> bool:
        """Ask a running optimization to stop at its next suspension point."""
        event = self._cancel_events.get(session_id)
        if event is None:
            return False
        logger.info(f"Cancellation requested for session {session_id}")
        event.set()
        return True

    def reset(self, session_id: str) -> PipelineState:
        """Return a finished session to idle."""
        if self.is_running(session_id):
            raise OptimizationInProgressError(session_id)
        self._set_state(session_id, PipelineState())
        return self.get_state(session_id)

    def _set_state(self, session_id: str, state: PipelineState) -> None:
        self._states[session_id] = state
        for listener in list(self._listeners.get(session_id, [])):
            listener(session_id, state)

    def _advance(self, session_id: str, step: PipelineStep, progress: int) -> None:
        current = self.get_state(session_id)
        self._set_state(session_id, current.advance(step, max(current.progress, progress)))
        logger.info(f"Session {session_id}: {step.value} ({progress}%)")

    def _progress(self, session_id: str, progress: int) -> None:
        self._set_state(session_id, self.get_state(session_id).with_progress(progress))

    def _fail(self, session_id: str, message: str, kind: PipelineErrorKind) -> None:
        current = self.get_state(session_id)
        if can_transition(current.step, PipelineStep.ERROR):
            self._set_state(session_id, current.fail(message, kind))

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def optimize(self, session_id: str, options: OptimizeOptions) -> FullOptimizationResult:
        """
        Run the full pipeline for a session.

        Args:
            session_id: Logical session; at most one run per session at a time
            options: Content, queries and optional assignment input

        Returns:
            FullOptimizationResult (also stored in the COMPLETE state)

        Raises:
            ValueError: If content or queries are empty
            OptimizationInProgressError: If the session already has a run in flight
            PipelineError: If a fatal stage fails, times out or is cancelled
        """
        if not options.content or not options.content.strip():
            raise ValueError("Content cannot be empty")
        if not [q for q in options.queries if q and q.strip()]:
            raise ValueError("At least one query is required")

        # Check-and-claim with no suspension point in between
        if session_id in self._in_flight:
            raise OptimizationInProgressError(session_id)
        self._in_flight.add(session_id)
        cancel_event = asyncio.Event()
        self._cancel_events[session_id] = cancel_event

        start_time = time.time()
        try:
            if self.get_state(session_id).step != PipelineStep.IDLE:
                self._set_state(session_id, PipelineState())
            result = await self._run(session_id, options, cancel_event)
            logger.info(f"Session {session_id}: optimization complete in {time.time() - start_time:.1f}s")
            return result

        except PipelineError as e:
            logger.error(
                f"Session {session_id}: optimization failed in stage '{e.stage}': {e.message}",
                exc_info=e.cause is not None,
                extra={"error_code": e.kind.value, "error_details": {"stage": e.stage}}
            )
            self._fail(session_id, e.message, e.kind)
            raise

        except asyncio.CancelledError:
            self._fail(session_id, CANCELLED_MESSAGE, PipelineErrorKind.FATAL_STAGE)
            raise

        except Exception as e:
            logger.error(f"Session {session_id}: unexpected optimization error: {e}", exc_info=True)
            self._fail(session_id, str(e) or "Optimization failed", PipelineErrorKind.FATAL_STAGE)
            raise

        finally:
            self._in_flight.discard(session_id)
            self._cancel_events.pop(session_id, None)

    async def _run(
        self,
        session_id: str,
        options: OptimizeOptions,
        cancel_event: asyncio.Event
    ) -> FullOptimizationResult:
        content = options.content
        queries = [q for q in options.queries if q and q.strip()]

        self._advance(session_id, PipelineStep.ANALYZING, PROGRESS_ANALYZING)
        analysis = await self._await_stage(
            "analyzing",
            self.llm_client.analyze_content(content, queries, options.current_scores),
            cancel_event
        )
        logger.info(f"Analysis complete: {len(analysis.optimization_opportunities)} opportunities found")

        self._advance(session_id, PipelineStep.OPTIMIZING, PROGRESS_OPTIMIZING)
        if options.focused:
            optimization = await self._await_stage(
                "optimizing",
                self.llm_client.optimize_focused(
                    options.chunks, options.query_assignments, analysis, options.chunk_headings
                ),
                cancel_event
            )
        else:
            optimization = await self._await_stage(
                "optimizing",
                self.llm_client.optimize_content(content, queries, analysis, options.current_scores),
                cancel_event
            )
        if not optimization.optimized_chunks:
            raise PipelineError(
                PipelineErrorKind.FATAL_STAGE, "optimizing", "Optimization returned no rewritten content"
            )
        logger.info(f"Optimization complete: {len(optimization.optimized_chunks)} chunks generated")

        content_briefs: List[ContentBrief] = []
        if options.query_assignments is not None and options.query_assignments.unassigned_queries:
            self._advance(session_id, PipelineStep.GENERATING_BRIEFS, PROGRESS_BRIEFS)
            content_briefs = await self._generate_briefs(options, cancel_event)

        self._advance(session_id, PipelineStep.SCORING, PROGRESS_SCORING)
        scoring = await self._score(optimization, options, queries, cancel_event)
        self._progress(session_id, PROGRESS_SCORED)

        validated_chunks = [
            validate_chunk(
                chunk,
                queries,
                scoring.original_full_scores[position],
                scoring.optimized_full_scores[position],
            )
            for position, chunk in enumerate(optimization.optimized_chunks)
        ]
        chunk_score_data = build_chunk_score_data(
            validated_chunks, queries, scoring.original_full_scores, scoring.optimized_full_scores
        )

        self._advance(session_id, PipelineStep.EXPLAINING, PROGRESS_EXPLAINING)
        explanations = await self._await_stage(
            "explaining",
            self.llm_client.explain_changes(validated_chunks, queries),
            cancel_event
        )
        logger.info(f"Explanations complete: {len(explanations.explanations)} explanations generated")

        self._progress(session_id, PROGRESS_SUMMARIZING)
        summary = await self._summarize(queries, validated_chunks, chunk_score_data, cancel_event)

        result = FullOptimizationResult(
            analysis=analysis,
            optimized_chunks=validated_chunks,
            explanations=explanations.explanations,
            original_content=content,
            timestamp=datetime.now(timezone.utc),
            summary=summary,
            chunk_score_data=chunk_score_data,
            original_full_scores=scoring.original_full_scores,
            optimized_full_scores=scoring.optimized_full_scores,
            original_document_chamfer=scoring.original_document_chamfer,
            optimized_document_chamfer=scoring.optimized_document_chamfer,
            content_briefs=content_briefs,
        )
        self._set_state(session_id, self.get_state(session_id).complete(result))
        return result

    # ------------------------------------------------------------------
    # Suspension points
    # ------------------------------------------------------------------

    async def _race(
        self,
        stage: str,
        awaitable: Awaitable[T],
        cancel_event: asyncio.Event,
        timeout: Optional[float]
    ) -> T:
        """Await a provider call, giving up on cancellation or after timeout seconds."""
        if cancel_event.is_set():
            close = getattr(awaitable, "close", None)
            if close is not None:
                close()
            raise PipelineError(PipelineErrorKind.FATAL_STAGE, stage, CANCELLED_MESSAGE)

        task = asyncio.ensure_future(awaitable)
        cancel_wait = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, cancel_wait}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            cancel_wait.cancel()

        if task in done:
            return task.result()

        task.cancel()
        if cancel_event.is_set():
            raise PipelineError(PipelineErrorKind.FATAL_STAGE, stage, CANCELLED_MESSAGE)
        raise asyncio.TimeoutError()

    async def _await_stage(self, stage: str, awaitable: Awaitable[T], cancel_event: asyncio.Event) -> T:
        """Await a fatal-stage provider call, mapping every failure to a PipelineError."""
        try:
            return await self._race(stage, awaitable, cancel_event, self.stage_timeout)
        except ProviderClientError as e:
            kind = (
                PipelineErrorKind.PROVIDER_PROTOCOL
                if e.error.code in _PROTOCOL_CODES
                else PipelineErrorKind.FATAL_STAGE
            )
            raise PipelineError(kind, stage, e.error.message, cause=e)
        except asyncio.TimeoutError as e:
            raise PipelineError(
                PipelineErrorKind.FATAL_STAGE,
                stage,
                f"Stage '{stage}' timed out after {self.stage_timeout:.0f}s. Please try again.",
                cause=e,
            )

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _chunk_summaries(self, options: OptimizeOptions) -> List[ChunkSummaryInput]:
        summaries = []
        for index, text in enumerate(options.chunks or []):
            heading, body = split_heading(text)
            if options.chunk_headings and index < len(options.chunk_headings) and options.chunk_headings[index]:
                heading = options.chunk_headings[index]
            summaries.append(ChunkSummaryInput(
                index=index,
                heading=heading or None,
                preview=body[:BRIEF_PREVIEW_CHARS],
            ))
        return summaries

    async def _generate_briefs(self, options: OptimizeOptions, cancel_event: asyncio.Event) -> List[ContentBrief]:
        unassigned = list(options.query_assignments.unassigned_queries)
        chunk_summaries = self._chunk_summaries(options)
        logger.info(f"Generating briefs for {len(unassigned)} unassigned queries")

        async def brief_for(query: str) -> ContentBrief:
            return await self.llm_client.generate_content_brief(query, options.content, chunk_summaries)

        outcome = await self._race(
            "generating_briefs",
            run_in_batches(
                unassigned,
                brief_for,
                batch_size=self.brief_batch_size,
                delay_seconds=self.brief_batch_delay,
                item_timeout=self.stage_timeout,
                max_retries=self.brief_max_retries,
                cancel_event=cancel_event,
            ),
            cancel_event,
            timeout=None
        )
        if outcome.cancelled:
            raise PipelineError(PipelineErrorKind.FATAL_STAGE, "generating_briefs", CANCELLED_MESSAGE)

        for query, error in outcome.failed:
            logger.warning(
                f"Brief generation failed for '{query}', dropping it: {error}",
                extra={"error_code": PipelineErrorKind.ITEM_LEVEL.value, "error_details": {"query": query}}
            )
        logger.info(f"Generated {len(outcome.succeeded)} of {len(unassigned)} content briefs")
        return outcome.succeeded

    def _scoring_heading(self, position: int, chunk: OptimizedChunk, options: OptimizeOptions) -> str:
        """The single heading prefix applied to both versions of a chunk."""
        heading, _ = split_heading(chunk.original_text)
        if heading:
            return heading
        if options.focused and options.chunk_headings:
            index = chunk.chunk_number - 1 if chunk.chunk_number > 0 else position
            if 0 <= index < len(options.chunk_headings) and options.chunk_headings[index]:
                return options.chunk_headings[index]
        return chunk.heading or ""

    async def _score(
        self,
        optimization: OptimizationResult,
        options: OptimizeOptions,
        queries: List[str],
        cancel_event: asyncio.Event
    ) -> ScoringResult:
        chunks = optimization.optimized_chunks
        optimized_texts: List[str] = []
        original_texts: List[str] = []

        for position, chunk in enumerate(chunks):
            heading = self._scoring_heading(position, chunk, options)
            _, original_body = split_heading(chunk.original_text)
            _, optimized_body = split_heading(chunk.optimized_text)
            prefix = f"{heading}\n\n" if heading else ""
            # An empty body stays empty so it is scored as missing, not as the heading alone
            original_texts.append(prefix + original_body if original_body else "")
            optimized_texts.append(prefix + optimized_body if optimized_body else "")

        batch = EmbeddingBatch()
        batch.add_many("optimized", optimized_texts)
        batch.add_many("original", original_texts)
        batch.add_many("query", queries)
        vectors = await self._await_stage("scoring", self.embedding_model.embed_keyed(batch), cancel_event)

        optimized_vectors = vectors.role("optimized", len(chunks))
        original_vectors = vectors.role("original", len(chunks))
        query_vectors = vectors.role("query", len(queries))

        optimized_chamfer = document_chamfer(optimized_vectors, query_vectors)
        original_chamfer = document_chamfer(original_vectors, query_vectors)
        logger.info(f"Document chamfer: original={original_chamfer:.4f}, optimized={optimized_chamfer:.4f}")

        def cells(content_vector: Optional[List[float]], chamfer: float, position: int, version: str) -> Dict[str, FullScore]:
            scores = {}
            for query, query_vector in zip(queries, query_vectors):
                score = score_pair(content_vector, query_vector, chamfer)
                if score is None:
                    logger.warning(
                        f"Missing embedding for {version} chunk {position} or query '{query}', scoring as zero",
                        extra={
                            "error_code": PipelineErrorKind.DATA_INTEGRITY.value,
                            "error_details": {"chunk": position, "query": query, "version": version},
                        }
                    )
                    score = FullScore.zero()
                scores[query] = score
            return scores

        return ScoringResult(
            original_full_scores={
                i: cells(original_vectors[i], original_chamfer, i, "original") for i in range(len(chunks))
            },
            optimized_full_scores={
                i: cells(optimized_vectors[i], optimized_chamfer, i, "optimized") for i in range(len(chunks))
            },
            original_document_chamfer=original_chamfer,
            optimized_document_chamfer=optimized_chamfer,
        )

    async def _summarize(
        self,
        queries: List[str],
        validated_chunks: List[ValidatedChunk],
        chunk_score_data: List[ChunkScoreData],
        cancel_event: asyncio.Event
    ) -> OptimizationSummary:
        try:
            ai_result = await self._await_stage(
                "summarizing",
                self.llm_client.summarize(queries, validated_chunks, chunk_score_data),
                cancel_event
            )
        except Exception as e:
            if cancel_event.is_set():
                raise
            message = e.message if isinstance(e, PipelineError) else str(e)
            logger.warning(
                f"Summary generation failed, using fallback: {message}",
                exc_info=not isinstance(e, PipelineError),
                extra={
                    "error_code": PipelineErrorKind.RECOVERABLE_STAGE.value,
                    "error_details": {"stage": "summarizing", "error_type": type(e).__name__},
                }
            )
            return build_fallback_summary(chunk_score_data)

        try:
            return build_summary_from_ai(chunk_score_data, ai_result)
        except ValueError as e:
            logger.warning(f"Summary response unusable, using fallback: {e}", exc_info=True)
            return build_fallback_summary(chunk_score_data)

