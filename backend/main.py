"""Main entry point for the Passage Optimizer API."""
import asyncio
import json
import logging

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse

from config import ASSIGNMENT_MIN_SCORE, CORS_ORIGINS, EMBEDDING_WARMUP, LOG_FORMAT, LOG_LEVEL, PORT
from logger import setup_logging
from models.api import AnalyzeRequest, AssignmentRequest, KeywordSuggestRequest, OptimizeRequest
from models.errors import (
    OptimizationInProgressError,
    PipelineError,
    ProviderClientError,
    ProviderErrorCode,
)
from models.pipeline import PipelineStep
from services.analysis_runner import AnalysisRunner
from services.chunking_engine import ChunkingEngine
from services.embedding_model import EmbeddingModel
from services.llm_client import LLMClient
from services.optimization_orchestrator import CANCELLED_MESSAGE, OptimizationOrchestrator
from services.query_assignment import compute_query_assignments

if LOG_FORMAT == "json":
    setup_logging(LOG_LEVEL, LOG_FORMAT)

# Initialize logging
logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="Passage Optimizer",
    description="Scores content chunks against search queries and rewrites them for retrieval",
    version="1.0.0"
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Initialize services (will be done on startup)
embedding_model: EmbeddingModel = None
llm_client: LLMClient = None
chunking_engine: ChunkingEngine = None
analysis_runner: AnalysisRunner = None
orchestrator: OptimizationOrchestrator = None

_TERMINAL_STEPS = (PipelineStep.COMPLETE, PipelineStep.ERROR)


@app.on_event("startup")
async def startup_event():
    """Initialize services on startup."""
    global embedding_model, llm_client, chunking_engine, analysis_runner, orchestrator

    logger.info("Initializing Passage Optimizer services...")

    try:
        embedding_model = EmbeddingModel()
        logger.info("Initialized EmbeddingModel")

        if EMBEDDING_WARMUP:
            # Free-tier models can take 15-20 seconds to load on first use
            if not await embedding_model.warmup():
                logger.warning("Embedding model warmup failed, first requests may be slow")

        llm_client = LLMClient()
        logger.info("Initialized LLMClient")

        chunking_engine = ChunkingEngine()
        analysis_runner = AnalysisRunner(embedding_model, chunking_engine)
        logger.info("Initialized AnalysisRunner")

        orchestrator = OptimizationOrchestrator(llm_client, embedding_model)
        logger.info("Initialized OptimizationOrchestrator")

        logger.info("All services initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize services: {e}", exc_info=True)
        raise


def _error_detail(code: str, message: str, details: dict = None) -> dict:
    return {"error": {"code": code, "message": message, "details": details or {}}}


def _provider_status(code: ProviderErrorCode) -> int:
    if code == ProviderErrorCode.RATE_LIMITED:
        return 429
    if code == ProviderErrorCode.QUOTA_EXHAUSTED:
        return 402
    return 503


def _http_error(e: Exception) -> HTTPException:
    """
    Map a service exception to an HTTPException with a structured detail.

    ProviderClientError -> 429 / 402 / 503, PipelineError -> the status of its
    cause (409 when cancelled, 504 on a stage timeout), OptimizationInProgressError
    -> 409, ValueError -> 400, anything else -> 500.
    """
    if isinstance(e, ProviderClientError):
        logger.error(f"Provider error: {e.error.message}")
        return HTTPException(
            status_code=_provider_status(e.error.code),
            detail=_error_detail(e.error.code.value, e.error.message, e.error.details),
        )

    if isinstance(e, PipelineError):
        details = {"stage": e.stage, "kind": e.kind.value}
        if e.message == CANCELLED_MESSAGE:
            return HTTPException(status_code=409, detail=_error_detail("CANCELLED", e.message, details))
        if isinstance(e.cause, ProviderClientError):
            code = e.cause.error.code
            return HTTPException(
                status_code=_provider_status(code),
                detail=_error_detail(code.value, e.message, {**details, **e.cause.error.details}),
            )
        if isinstance(e.cause, asyncio.TimeoutError):
            return HTTPException(
                status_code=504,
                detail=_error_detail(ProviderErrorCode.TIMEOUT_ERROR.value, e.message, details),
            )
        return HTTPException(status_code=500, detail=_error_detail("PIPELINE_ERROR", e.message, details))

    if isinstance(e, OptimizationInProgressError):
        return HTTPException(
            status_code=409,
            detail=_error_detail("OPTIMIZATION_IN_PROGRESS", str(e), {"session_id": e.session_id}),
        )

    if isinstance(e, ValueError):
        return HTTPException(status_code=400, detail=_error_detail("VALIDATION_ERROR", str(e)))

    logger.error(f"Unexpected error: {e}", exc_info=True)
    return HTTPException(
        status_code=500,
        detail=_error_detail(ProviderErrorCode.UNKNOWN_ERROR.value, f"Internal server error: {str(e)}"),
    )


def _sse(payload: dict) -> bytes:
    return f"data: {json.dumps(payload)}\n\n".encode('utf-8')


@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "ok", "message": "Passage Optimizer API"}


@app.get("/health")
async def health():
    """Detailed health check."""
    return {
        "status": "healthy",
        "service": "passage-optimizer",
        "version": "1.0.0"
    }


@app.post("/analyze")
async def analyze_endpoint(request: AnalyzeRequest):
    """
    Chunk content and score every chunk against the keywords.

    Args:
        request: AnalyzeRequest with content, keywords and chunking strategy

    Returns:
        AnalysisResult with document, chunk and improvement scores

    Raises:
        HTTPException: For validation errors or provider failures
    """
    try:
        logger.info(f"Analyzing {len(request.content)} chars against {len(request.keywords)} keywords")
        return await analysis_runner.analyze(
            request.content,
            request.keywords,
            strategy=request.strategy,
            optimized_content=request.optimized_content,
            compare_cascade=request.compare_cascade,
            sentence_chamfer=request.sentence_chamfer,
            max_sentences_per_chunk=request.max_sentences_per_chunk,
        )
    except HTTPException:
        raise
    except Exception as e:
        raise _http_error(e)


@app.post("/optimize")
async def optimize_endpoint(request: OptimizeRequest):
    """
    Run the full optimization pipeline for a session and return its final state.

    Raises:
        HTTPException: 409 if the session is already optimizing or the run was
            cancelled, otherwise the status of the failing stage
    """
    try:
        logger.info(f"Optimizing session {request.session_id} for {len(request.queries)} queries")
        await orchestrator.optimize(request.session_id, request.to_options())
        return {
            "session_id": request.session_id,
            "state": orchestrator.get_state(request.session_id).to_dict(),
        }
    except HTTPException:
        raise
    except Exception as e:
        raise _http_error(e)


@app.post("/optimize/stream")
async def optimize_stream_endpoint(request: OptimizeRequest):
    """
    Streaming variant of /optimize.

    Returns:
        StreamingResponse with SSE format:
        - data: {type: "state", session_id, state} for every pipeline transition
        - data: {type: "complete", session_id, state} once the run succeeds
        - data: {type: "error", status, error} if it fails
    """
    session_id = request.session_id

    async def generate_stream():
        """Generator function for streaming pipeline states."""
        if orchestrator.is_running(session_id):
            exc = _http_error(OptimizationInProgressError(session_id))
            yield _sse({"type": "error", "status": exc.status_code, **exc.detail})
            return

        queue: asyncio.Queue = asyncio.Queue()
        unsubscribe = orchestrator.subscribe(session_id, lambda _sid, state: queue.put_nowait(state))
        task = asyncio.ensure_future(orchestrator.optimize(session_id, request.to_options()))

        try:
            while True:
                getter = asyncio.ensure_future(queue.get())
                done, _ = await asyncio.wait({getter, task}, return_when=asyncio.FIRST_COMPLETED)
                if getter not in done:
                    getter.cancel()
                    break
                state = getter.result()
                if state.step in _TERMINAL_STEPS:
                    break
                yield _sse({"type": "state", "session_id": session_id, "state": state.to_dict()})

            # States published after the run finished but before they were read
            while not queue.empty():
                state = queue.get_nowait()
                if state.step not in _TERMINAL_STEPS:
                    yield _sse({"type": "state", "session_id": session_id, "state": state.to_dict()})

            try:
                await task
            except Exception as e:
                exc = _http_error(e)
                yield _sse({"type": "error", "status": exc.status_code, **exc.detail})
                return

            final_state = orchestrator.get_state(session_id)
            yield _sse({"type": "complete", "session_id": session_id, "state": final_state.to_dict()})
            logger.info(f"Streaming optimization for session {session_id} finished")

        finally:
            unsubscribe()
            if not task.done():
                # Client went away mid-run
                orchestrator.cancel(session_id)

    return StreamingResponse(
        generate_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no"  # Disable buffering in nginx
        }
    )


@app.get("/optimize/{session_id}")
async def optimize_state_endpoint(session_id: str):
    """Current pipeline state of a session (idle if it never ran)."""
    return {
        "session_id": session_id,
        "running": orchestrator.is_running(session_id),
        "state": orchestrator.get_state(session_id).to_dict(),
    }


@app.post("/optimize/{session_id}/reset")
async def optimize_reset_endpoint(session_id: str):
    try:
        state = orchestrator.reset(session_id)
        return {"session_id": session_id, "state": state.to_dict()}
    except Exception as e:
        raise _http_error(e)


@app.post("/optimize/{session_id}/cancel")
async def optimize_cancel_endpoint(session_id: str):
    return {"session_id": session_id, "cancelled": orchestrator.cancel(session_id)}


@app.post("/keywords/suggest")
async def keywords_suggest_endpoint(request: KeywordSuggestRequest):
    """Suggest target keywords for a piece of content."""
    try:
        if not request.content or not request.content.strip():
            raise ValueError("Content cannot be empty")
        return await llm_client.suggest_keywords(request.content)
    except HTTPException:
        raise
    except Exception as e:
        raise _http_error(e)


@app.post("/assignments")
async def assignments_endpoint(request: AssignmentRequest):
    """Route every query to the chunk it scores best in."""
    try:
        if not request.queries:
            raise ValueError("At least one query is required")
        min_score = ASSIGNMENT_MIN_SCORE if request.min_score is None else request.min_score
        return compute_query_assignments(request.chunk_scores, request.queries, min_score)
    except HTTPException:
        raise
    except Exception as e:
        raise _http_error(e)


if __name__ == "__main__":
    import uvicorn
    logger.info(f"Starting Passage Optimizer API on port {PORT}")
    uvicorn.run(app, host="0.0.0.0", port=PORT)
