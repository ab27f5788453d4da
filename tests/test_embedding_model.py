"""Unit tests for EmbeddingModel class."""
import sys
from pathlib import Path

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent.parent / "backend"))

import json

import httpx
import pytest
from unittest.mock import patch

from models.errors import ProviderClientError, ProviderErrorCode
from services.embedding_model import EmbeddingBatch, EmbeddingModel


def fake_vector(text: str) -> list:
    """Deterministic 3-d vector derived from the text."""
    return [float(len(text)), float(sum(map(ord, text)) % 97), 1.0]


def make_model(handler, **kwargs) -> EmbeddingModel:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    kwargs.setdefault("initial_delay", 0.0)
    return EmbeddingModel(api_key="test_key", http_client=client, **kwargs)


class EchoHandler:
    """Mock transport handler that embeds every input and records requests."""

    def __init__(self):
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.requests.append(body)
        return httpx.Response(200, json=[fake_vector(t) for t in body["inputs"]])


class SequenceHandler:
    """Returns the given responses in order, then echoes."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls += 1
        if self.responses:
            response = self.responses.pop(0)
            if isinstance(response, Exception):
                raise response
            return response
        body = json.loads(request.content)
        return httpx.Response(200, json=[fake_vector(t) for t in body["inputs"]])


class TestEmbeddingModel:
    """Test suite for EmbeddingModel."""

    def test_initialization_success(self):
        """Test successful initialization with API key."""
        model = EmbeddingModel(api_key="test_key")
        assert model.api_key == "test_key"
        assert model.model_name == "sentence-transformers/all-mpnet-base-v2"
        assert model.max_retries == 5
        assert model.api_url.endswith("sentence-transformers/all-mpnet-base-v2")

    def test_initialization_without_api_key(self):
        """Test initialization fails without API key."""
        with patch('services.embedding_model.HUGGINGFACE_API_KEY', None):
            with pytest.raises(ValueError, match="HUGGINGFACE_API_KEY"):
                EmbeddingModel(api_key=None)

    def test_initialization_invalid_batch_size(self):
        with pytest.raises(ValueError, match="batch_size"):
            EmbeddingModel(api_key="test_key", batch_size=0)

    async def test_embed_text_empty_string(self):
        """Test embed_text raises error for empty string."""
        model = EmbeddingModel(api_key="test_key")

        with pytest.raises(ValueError, match="Text cannot be empty"):
            await model.embed_text("")

        with pytest.raises(ValueError, match="Text cannot be empty"):
            await model.embed_text("   ")

    async def test_embed_batch_empty_list(self):
        """Test embed_batch raises error for empty list."""
        model = EmbeddingModel(api_key="test_key")

        with pytest.raises(ValueError, match="Texts list cannot be empty"):
            await model.embed_batch([])

    async def test_embed_batch_rejects_empty_strings(self):
        model = EmbeddingModel(api_key="test_key")

        with pytest.raises(ValueError, match=r"positions \[1\]"):
            await model.embed_batch(["ok", "  ", "fine"])

    async def test_embed_text_success(self):
        """Test successful single text embedding."""
        handler = EchoHandler()
        model = make_model(handler)

        result = await model.embed_text("test text")

        assert result == fake_vector("test text")
        assert handler.requests[0]["inputs"] == ["test text"]
        assert handler.requests[0]["options"]["wait_for_model"] is True

    async def test_embed_batch_pages_preserve_order(self):
        """Requests larger than batch_size are paged and re-assembled in order."""
        handler = EchoHandler()
        model = make_model(handler, batch_size=2)
        texts = ["alpha", "beta", "gamma", "delta", "epsilon"]

        result = await model.embed_batch(texts)

        assert result == [fake_vector(t) for t in texts]
        assert [r["inputs"] for r in handler.requests] == [
            ["alpha", "beta"], ["gamma", "delta"], ["epsilon"]
        ]

    async def test_failing_page_fails_whole_call(self):
        pages = []

        def handler(request):
            body = json.loads(request.content)
            pages.append(body["inputs"])
            if len(pages) == 2:
                return httpx.Response(401, text="bad key")
            return httpx.Response(200, json=[fake_vector(t) for t in body["inputs"]])

        model = make_model(handler, batch_size=1)

        with pytest.raises(ProviderClientError) as exc_info:
            await model.embed_batch(["a", "b", "c"])

        assert exc_info.value.error.code == ProviderErrorCode.AUTHENTICATION_ERROR
        assert len(pages) == 2

    async def test_rate_limited_is_not_retried(self):
        handler = SequenceHandler(httpx.Response(429))
        model = make_model(handler)

        with pytest.raises(ProviderClientError) as exc_info:
            await model.embed_text("query")

        assert exc_info.value.error.code == ProviderErrorCode.RATE_LIMITED
        assert exc_info.value.retryable
        assert handler.calls == 1

    async def test_quota_exhausted(self):
        model = make_model(SequenceHandler(httpx.Response(402)))

        with pytest.raises(ProviderClientError) as exc_info:
            await model.embed_text("query")

        assert exc_info.value.error.code == ProviderErrorCode.QUOTA_EXHAUSTED
        assert not exc_info.value.retryable
        assert exc_info.value.error.details["status"] == 402

    async def test_other_status_is_api_error(self):
        model = make_model(SequenceHandler(httpx.Response(500, text="boom")))

        with pytest.raises(ProviderClientError) as exc_info:
            await model.embed_text("query")

        assert exc_info.value.error.code == ProviderErrorCode.API_ERROR
        assert "500" in exc_info.value.error.message

    async def test_model_loading_is_retried(self):
        handler = SequenceHandler(httpx.Response(503), httpx.Response(503))
        model = make_model(handler)

        result = await model.embed_text("query")

        assert result == fake_vector("query")
        assert handler.calls == 3

    async def test_model_loading_exhausts_retries(self):
        handler = SequenceHandler(*[httpx.Response(503) for _ in range(3)])
        model = make_model(handler, max_retries=3)

        with pytest.raises(ProviderClientError) as exc_info:
            await model.embed_text("query")

        assert exc_info.value.error.code == ProviderErrorCode.MODEL_LOADING
        assert handler.calls == 3

    async def test_timeout_is_retried_then_reported(self):
        request = httpx.Request("POST", "https://example.test")
        handler = SequenceHandler(*[httpx.ReadTimeout("slow", request=request) for _ in range(2)])
        model = make_model(handler, max_retries=2)

        with pytest.raises(ProviderClientError) as exc_info:
            await model.embed_text("query")

        assert exc_info.value.error.code == ProviderErrorCode.TIMEOUT_ERROR
        assert handler.calls == 2

    async def test_network_error_recovers(self):
        request = httpx.Request("POST", "https://example.test")
        handler = SequenceHandler(httpx.ConnectError("refused", request=request))
        model = make_model(handler)

        assert await model.embed_text("query") == fake_vector("query")

    async def test_wrong_vector_count_is_malformed(self):
        model = make_model(SequenceHandler(httpx.Response(200, json=[[0.1, 0.2]])))

        with pytest.raises(ProviderClientError) as exc_info:
            await model.embed_batch(["one", "two"])

        assert exc_info.value.error.code == ProviderErrorCode.MALFORMED_RESPONSE

    async def test_non_json_is_malformed(self):
        model = make_model(SequenceHandler(httpx.Response(200, text="<html>")))

        with pytest.raises(ProviderClientError) as exc_info:
            await model.embed_text("query")

        assert exc_info.value.error.code == ProviderErrorCode.MALFORMED_RESPONSE

    async def test_warmup(self):
        assert await make_model(EchoHandler()).warmup() is True
        assert await make_model(SequenceHandler(httpx.Response(401))).warmup() is False


class TestKeyedEmbedding:
    """Test suite for EmbeddingBatch / embed_keyed."""

    def test_duplicate_id_rejected(self):
        batch = EmbeddingBatch()
        batch.add("query", 0, "a")

        with pytest.raises(ValueError, match="Duplicate"):
            batch.add("query", 0, "b")

    def test_same_key_in_different_roles(self):
        batch = EmbeddingBatch()
        batch.add_many("original", ["a", "b"])
        batch.add_many("optimized", ["c", "d"])

        assert len(batch) == 4
        assert batch.role_counts() == {"original": 2, "optimized": 2}

    async def test_vectors_addressed_by_role_and_key(self):
        handler = EchoHandler()
        model = make_model(handler)
        batch = EmbeddingBatch()
        batch.add_many("optimized", ["new one", "new two"])
        batch.add_many("original", ["old one", "old two"])
        batch.add_many("query", ["q"])

        vectors = await model.embed_keyed(batch)

        assert vectors.get("original", 1) == fake_vector("old two")
        assert vectors.role("optimized", 2) == [fake_vector("new one"), fake_vector("new two")]
        assert vectors.get("query", 0) == fake_vector("q")
        assert len(handler.requests) == 1

    async def test_empty_texts_map_to_none(self):
        handler = EchoHandler()
        model = make_model(handler)
        batch = EmbeddingBatch()
        batch.add_many("chunk", ["body", "", "   "])
        batch.add("query", 0, "q")

        vectors = await model.embed_keyed(batch)

        assert vectors.role("chunk", 3) == [fake_vector("body"), None, None]
        assert vectors.present("chunk", 3) == [fake_vector("body")]
        assert handler.requests[0]["inputs"] == ["body", "q"]

    async def test_all_empty_makes_no_request(self):
        handler = EchoHandler()
        model = make_model(handler)
        batch = EmbeddingBatch()
        batch.add("chunk", 0, "")

        vectors = await model.embed_keyed(batch)

        assert vectors.get("chunk", 0) is None
        assert handler.requests == []
