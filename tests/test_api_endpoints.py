"""Integration tests for the Passage Optimizer HTTP endpoints."""
import pytest
from fastapi.testclient import TestClient
from unittest.mock import AsyncMock, Mock, patch
import json
import sys
import os
from datetime import datetime, timezone

# Add backend and tests to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'backend'))
sys.path.insert(0, os.path.dirname(__file__))

from models.chunk import AnalysisResult, ChunkScore, KeywordScore, OriginalScore
from models.errors import OptimizationInProgressError, ProviderClientError, ProviderError, ProviderErrorCode
from models.optimization import KeywordSuggestion, KeywordSuggestions, SearchIntent
from models.scores import SimilarityScores
from services.optimization_orchestrator import OptimizationOrchestrator
from test_optimization_orchestrator import ORIGINAL, QUERIES, fake_embedding_model, fake_llm_client


def provider_error(code: ProviderErrorCode) -> ProviderClientError:
    return ProviderClientError(ProviderError(code=code, message=f"{code.value} from provider", details={"k": "v"}))


def sse_events(response) -> list:
    return [
        json.loads(block[len("data: "):])
        for block in response.text.split("\n\n")
        if block.startswith("data: ")
    ]


@pytest.fixture
def client():
    """Create a test client with mocked providers behind a real orchestrator."""
    # Import after path is set
    from main import app

    # Mock the startup event to avoid initializing real services
    with patch('main.startup_event'):
        client = TestClient(app)

        # Manually set the global services
        import main
        main.embedding_model = fake_embedding_model()
        main.llm_client = fake_llm_client()
        main.chunking_engine = Mock()
        main.analysis_runner = Mock()
        main.orchestrator = OptimizationOrchestrator(
            main.llm_client, main.embedding_model, brief_batch_delay=0, brief_max_retries=0
        )

        yield client


@pytest.fixture
def optimize_body():
    return {"session_id": "s1", "content": ORIGINAL, "queries": QUERIES}


class TestStartup:

    async def test_startup_warms_embedding_model(self):
        import main
        with patch('main.EmbeddingModel') as mock_embedding, \
                patch('main.LLMClient'), \
                patch('main.ChunkingEngine'), \
                patch('main.EMBEDDING_WARMUP', True):
            mock_embedding.return_value.warmup = AsyncMock(return_value=True)

            await main.startup_event()

        mock_embedding.return_value.warmup.assert_awaited_once()
        assert main.orchestrator.embedding_model is mock_embedding.return_value

    async def test_failed_warmup_does_not_block_startup(self):
        import main
        with patch('main.EmbeddingModel') as mock_embedding, \
                patch('main.LLMClient'), \
                patch('main.ChunkingEngine'), \
                patch('main.EMBEDDING_WARMUP', True):
            mock_embedding.return_value.warmup = AsyncMock(return_value=False)

            await main.startup_event()

        assert main.analysis_runner.embedding_model is mock_embedding.return_value

    async def test_warmup_can_be_disabled(self):
        import main
        with patch('main.EmbeddingModel') as mock_embedding, \
                patch('main.LLMClient'), \
                patch('main.ChunkingEngine'), \
                patch('main.EMBEDDING_WARMUP', False):
            mock_embedding.return_value.warmup = AsyncMock(return_value=True)

            await main.startup_event()

        mock_embedding.return_value.warmup.assert_not_awaited()


class TestHealth:

    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_health(self, client):
        response = client.get("/health")
        assert response.json() == {"status": "healthy", "service": "passage-optimizer", "version": "1.0.0"}


class TestAnalyzeEndpoint:

    def test_success(self, client):
        import main
        scores = SimilarityScores(cosine=0.8, euclidean=0.4, chamfer=0.8, passage_score=80)
        main.analysis_runner.analyze = AsyncMock(return_value=AnalysisResult(
            original_scores=OriginalScore(text="doc", keyword_scores=[KeywordScore("pricing", scores)]),
            chunk_scores=[ChunkScore("chunk-0", 0, "doc", 1, 3, [KeywordScore("pricing", scores)])],
            no_cascade_scores=None,
            optimized_scores=None,
            improvements=[],
            timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc),
        ))

        response = client.post("/analyze", json={"content": "doc", "keywords": ["pricing"], "strategy": "layout_aware"})

        assert response.status_code == 200
        data = response.json()
        assert data["chunk_scores"][0]["keyword_scores"][0]["scores"]["cosine"] == 0.8
        assert data["original_scores"]["keyword_scores"][0]["keyword"] == "pricing"
        call = main.analysis_runner.analyze.await_args
        assert call.kwargs["strategy"].value == "layout_aware"

    def test_sentence_chamfer_options_passed_through(self, client):
        import main
        main.analysis_runner.analyze = AsyncMock(side_effect=ValueError("stop"))

        client.post("/analyze", json={
            "content": "doc", "keywords": ["k"], "sentence_chamfer": True, "max_sentences_per_chunk": 5
        })

        kwargs = main.analysis_runner.analyze.await_args.kwargs
        assert kwargs["sentence_chamfer"] is True
        assert kwargs["max_sentences_per_chunk"] == 5

    def test_sentence_chamfer_off_by_default(self, client):
        import main
        main.analysis_runner.analyze = AsyncMock(side_effect=ValueError("stop"))

        client.post("/analyze", json={"content": "doc", "keywords": ["k"]})

        assert main.analysis_runner.analyze.await_args.kwargs["sentence_chamfer"] is False

    def test_invalid_sentence_cap_rejected(self, client):
        response = client.post("/analyze", json={"content": "doc", "keywords": ["k"], "max_sentences_per_chunk": 0})
        assert response.status_code == 422

    def test_unknown_strategy_rejected(self, client):
        response = client.post("/analyze", json={"content": "doc", "keywords": ["k"], "strategy": "words"})
        assert response.status_code == 422

    def test_validation_error(self, client):
        import main
        main.analysis_runner.analyze = AsyncMock(side_effect=ValueError("Please add at least one keyword"))

        response = client.post("/analyze", json={"content": "doc", "keywords": []})

        assert response.status_code == 400
        error = response.json()["detail"]["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert error["message"] == "Please add at least one keyword"

    @pytest.mark.parametrize("code,status", [
        (ProviderErrorCode.RATE_LIMITED, 429),
        (ProviderErrorCode.QUOTA_EXHAUSTED, 402),
        (ProviderErrorCode.MODEL_LOADING, 503),
        (ProviderErrorCode.AUTHENTICATION_ERROR, 503),
    ])
    def test_provider_errors(self, client, code, status):
        import main
        main.analysis_runner.analyze = AsyncMock(side_effect=provider_error(code))

        response = client.post("/analyze", json={"content": "doc", "keywords": ["k"]})

        assert response.status_code == status
        error = response.json()["detail"]["error"]
        assert error["code"] == code.value
        assert error["details"] == {"k": "v"}

    def test_unexpected_error(self, client):
        import main
        main.analysis_runner.analyze = AsyncMock(side_effect=RuntimeError("boom"))

        response = client.post("/analyze", json={"content": "doc", "keywords": ["k"]})

        assert response.status_code == 500
        assert response.json()["detail"]["error"]["code"] == "UNKNOWN_ERROR"


class TestOptimizeEndpoint:

    def test_full_run(self, client, optimize_body):
        response = client.post("/optimize", json=optimize_body)

        assert response.status_code == 200
        data = response.json()
        assert data["session_id"] == "s1"
        state = data["state"]
        assert state["step"] == "complete"
        assert state["progress"] == 100
        assert state["result"]["summary"]["is_fallback"] is True
        assert state["result"]["optimized_chunks"][0]["changes_applied"][0]["actual_scores"]["query"] == "pricing"

        snapshot = client.get("/optimize/s1").json()
        assert snapshot["state"]["step"] == "complete"
        assert snapshot["running"] is False

    def test_focused_request_with_assignments(self, client, optimize_body):
        import main
        optimize_body.update({
            "use_focused_optimization": True,
            "chunks": [ORIGINAL],
            "query_assignments": {
                "assignments": [{"query": "pricing", "assigned_chunk_index": 0, "score": 0.8, "is_primary": True}],
                "chunk_assignments": [{
                    "chunk_index": 0,
                    "chunk_preview": "It costs",
                    "assigned_queries": [
                        {"query": "pricing", "assigned_chunk_index": 0, "score": 0.8, "is_primary": True}
                    ],
                    "average_score": 0.8,
                }],
                "unassigned_queries": ["refunds"],
            },
        })

        response = client.post("/optimize", json=optimize_body)

        assert response.status_code == 200
        main.llm_client.optimize_focused.assert_awaited_once()
        briefs = response.json()["state"]["result"]["content_briefs"]
        assert [b["target_query"] for b in briefs] == ["refunds"]

    def test_stage_failure_maps_provider_status(self, client, optimize_body):
        import main
        main.llm_client.analyze_content.side_effect = provider_error(ProviderErrorCode.RATE_LIMITED)

        response = client.post("/optimize", json=optimize_body)

        assert response.status_code == 429
        error = response.json()["detail"]["error"]
        assert error["code"] == "RATE_LIMITED"
        assert error["details"]["stage"] == "analyzing"

        state = client.get("/optimize/s1").json()["state"]
        assert state["step"] == "error"
        assert state["error_kind"] == "fatal_stage"
        assert state["result"] is None

    def test_empty_queries(self, client):
        response = client.post("/optimize", json={"content": ORIGINAL, "queries": [" "]})

        assert response.status_code == 400

    def test_already_running(self, client, optimize_body):
        import main
        main.orchestrator = Mock()
        main.orchestrator.optimize = AsyncMock(side_effect=OptimizationInProgressError("s1"))

        response = client.post("/optimize", json=optimize_body)

        assert response.status_code == 409
        assert response.json()["detail"]["error"]["code"] == "OPTIMIZATION_IN_PROGRESS"


class TestOptimizeStream:

    def test_stream_states_then_complete(self, client, optimize_body):
        response = client.post("/optimize/stream", json=optimize_body)

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.headers["cache-control"] == "no-cache"

        events = sse_events(response)
        states = [e for e in events if e["type"] == "state"]
        assert states[0]["state"]["step"] == "analyzing"
        progress = [e["state"]["progress"] for e in states]
        assert progress == sorted(progress)

        final = events[-1]
        assert final["type"] == "complete"
        assert final["state"]["step"] == "complete"
        assert final["state"]["result"]["summary"]["is_fallback"] is True

    def test_stream_error(self, client, optimize_body):
        import main
        main.llm_client.explain_changes.side_effect = provider_error(ProviderErrorCode.MALFORMED_RESPONSE)

        events = sse_events(client.post("/optimize/stream", json=optimize_body))

        final = events[-1]
        assert final["type"] == "error"
        assert final["status"] == 503
        assert final["error"]["code"] == "MALFORMED_RESPONSE"
        assert final["error"]["details"]["kind"] == "provider_protocol"

    def test_stream_rejected_while_running(self, client, optimize_body):
        import main
        main.orchestrator = Mock()
        main.orchestrator.is_running.return_value = True

        events = sse_events(client.post("/optimize/stream", json=optimize_body))

        assert len(events) == 1
        assert events[0]["type"] == "error"
        assert events[0]["status"] == 409
        main.orchestrator.optimize.assert_not_called()


class TestSessionEndpoints:

    def test_unknown_session_is_idle(self, client):
        data = client.get("/optimize/nobody").json()

        assert data["state"]["step"] == "idle"
        assert data["state"]["progress"] == 0

    def test_reset_after_run(self, client, optimize_body):
        client.post("/optimize", json=optimize_body)

        response = client.post("/optimize/s1/reset")

        assert response.status_code == 200
        assert response.json()["state"]["step"] == "idle"

    def test_reset_while_running(self, client):
        import main
        main.orchestrator = Mock()
        main.orchestrator.reset.side_effect = OptimizationInProgressError("s1")

        response = client.post("/optimize/s1/reset")

        assert response.status_code == 409

    def test_cancel_idle_session(self, client):
        response = client.post("/optimize/s1/cancel")

        assert response.json() == {"session_id": "s1", "cancelled": False}


class TestKeywordEndpoint:

    def test_suggest(self, client):
        import main
        main.llm_client.suggest_keywords = AsyncMock(return_value=KeywordSuggestions(keywords=[
            KeywordSuggestion(keyword="passage score", reason="core", intent=SearchIntent.INFORMATIONAL)
        ]))

        response = client.post("/keywords/suggest", json={"content": "Some content"})

        assert response.status_code == 200
        assert response.json()["keywords"][0]["intent"] == "informational"

    def test_empty_content(self, client):
        response = client.post("/keywords/suggest", json={"content": "  "})

        assert response.status_code == 400


class TestAssignmentEndpoint:

    def test_assignments(self, client):
        response = client.post("/assignments", json={
            "queries": ["pricing", "support"],
            "chunk_scores": [
                {"chunk_index": 0, "text": "Pricing text", "scores": {"pricing": 0.8, "support": 0.1}},
                {"chunk_index": 1, "text": "Setup text", "scores": {"pricing": 0.2, "support": 0.2}},
            ],
        })

        assert response.status_code == 200
        data = response.json()
        assert data["assignments"][0]["query"] == "pricing"
        assert data["assignments"][0]["assigned_chunk_index"] == 0
        assert data["unassigned_queries"] == ["support"]
        assert data["chunk_assignments"][0]["chunk_preview"] == "Pricing text"

    def test_custom_threshold(self, client):
        response = client.post("/assignments", json={
            "queries": ["support"],
            "chunk_scores": [{"chunk_index": 0, "text": "t", "scores": {"support": 0.2}}],
            "min_score": 0.1,
        })

        assert response.json()["unassigned_queries"] == []

    def test_no_queries(self, client):
        response = client.post("/assignments", json={"queries": [], "chunk_scores": []})

        assert response.status_code == 400
