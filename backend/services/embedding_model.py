"""Embedding model integration with Hugging Face Inference API."""
import asyncio
import time
import logging
from typing import Dict, Hashable, Iterator, List, Optional, Sequence, Tuple

import httpx

from config import HUGGINGFACE_API_KEY, EMBEDDING_MODEL, EMBEDDING_BATCH_SIZE
from models.errors import ProviderClientError, ProviderError, ProviderErrorCode

logger = logging.getLogger(__name__)

EmbeddingKey = Tuple[str, Hashable]  # (role, key within role)


class EmbeddingBatch:
    """
    Texts tagged with a semantic role and a key, embedded as one request.

    Callers read vectors back by (role, key) from the returned EmbeddingMap,
    never by position in the flattened request.
    """

    def __init__(self):
        self._entries: List[Tuple[EmbeddingKey, str]] = []
        self._seen: set = set()

    def add(self, role: str, key: Hashable, text: str) -> None:
        entry_key = (role, key)
        if entry_key in self._seen:
            raise ValueError(f"Duplicate embedding request id: {entry_key}")
        self._seen.add(entry_key)
        self._entries.append((entry_key, text))

    def add_many(self, role: str, texts: Sequence[str]) -> None:
        """Add texts under a role, keyed by their position in `texts`."""
        for index, text in enumerate(texts):
            self.add(role, index, text)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[Tuple[EmbeddingKey, str]]:
        return iter(self._entries)

    def role_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for (role, _), _text in self._entries:
            counts[role] = counts.get(role, 0) + 1
        return counts


class EmbeddingMap:
    """Vectors keyed by the (role, key) ids of an EmbeddingBatch."""

    def __init__(self, vectors: Dict[EmbeddingKey, Optional[List[float]]]):
        self._vectors = vectors

    def get(self, role: str, key: Hashable) -> Optional[List[float]]:
        """Vector for one request id; None if it was empty or never requested."""
        return self._vectors.get((role, key))

    def role(self, role: str, count: int) -> List[Optional[List[float]]]:
        """Vectors for keys 0..count-1 of a role added with add_many."""
        return [self.get(role, index) for index in range(count)]

    def present(self, role: str, count: int) -> List[List[float]]:
        """Only the usable vectors of a role, in key order."""
        return [v for v in self.role(role, count) if v]

    def __len__(self) -> int:
        return len(self._vectors)


class EmbeddingModel:
    """Async wrapper for the Hugging Face Inference API embedding model."""

    def __init__(
        self,
        api_key: Optional[str] = HUGGINGFACE_API_KEY,
        model_name: str = EMBEDDING_MODEL,
        max_retries: int = 5,
        initial_delay: float = 5.0,
        timeout: float = 120.0,
        batch_size: int = EMBEDDING_BATCH_SIZE,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        """
        Initialize the embedding model client.

        Args:
            api_key: Hugging Face API key
            model_name: Model identifier (default: sentence-transformers/all-mpnet-base-v2)
            max_retries: Maximum number of attempts for transient errors (503, timeouts)
            initial_delay: Initial delay in seconds for exponential backoff
            timeout: Request timeout in seconds
            batch_size: Maximum texts per provider call; larger requests are paged
            http_client: Optional shared client (tests inject a mock transport here)
        """
        if not api_key:
            raise ValueError("HUGGINGFACE_API_KEY environment variable is required")
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")

        self.api_key = api_key
        self.model_name = model_name
        self.max_retries = max_retries
        self.initial_delay = initial_delay
        self.timeout = timeout
        self.batch_size = batch_size
        self._http_client = http_client
        self.api_url = f"https://api-inference.huggingface.co/models/{model_name}"

        logger.info(f"Initialized EmbeddingModel with model: {model_name}")

    async def embed_text(self, text: str) -> List[float]:
        """
        Generate embedding for a single text string.

        Raises:
            ValueError: If text is empty
            ProviderClientError: If the API request fails
        """
        if not text or not text.strip():
            raise ValueError("Text cannot be empty")

        return (await self.embed_batch([text]))[0]

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """
        Generate embeddings for multiple texts, one vector per text, in input order.

        Requests larger than batch_size are sent as consecutive pages and
        re-assembled in order. Any failing page fails the whole call; no
        partial results are returned.

        Raises:
            ValueError: If texts list is empty or contains empty strings
            ProviderClientError: If the API request fails
        """
        if not texts:
            raise ValueError("Texts list cannot be empty")

        empty_positions = [i for i, t in enumerate(texts) if not t or not t.strip()]
        if empty_positions:
            raise ValueError(f"Texts at positions {empty_positions} are empty")

        embeddings: List[List[float]] = []
        total_pages = (len(texts) + self.batch_size - 1) // self.batch_size
        for page_number, start in enumerate(range(0, len(texts), self.batch_size), start=1):
            page = texts[start:start + self.batch_size]
            logger.debug(f"Embedding page {page_number}/{total_pages} with {len(page)} texts")
            embeddings.extend(await self._embed_with_retry(page))

        return embeddings

    async def embed_keyed(self, batch: EmbeddingBatch) -> EmbeddingMap:
        """
        Embed a role-tagged batch in a single ordered request.

        Empty texts are not sent; their ids map to None so the caller can
        score them as zero instead of failing the batch.
        """
        ids: List[EmbeddingKey] = []
        texts: List[str] = []
        vectors: Dict[EmbeddingKey, Optional[List[float]]] = {}

        for entry_key, text in batch:
            if text and text.strip():
                ids.append(entry_key)
                texts.append(text)
            else:
                vectors[entry_key] = None

        if vectors:
            logger.warning(f"Skipping {len(vectors)} empty texts in embedding batch: {sorted(vectors, key=str)}")

        logger.info(f"Embedding {len(texts)} texts by role: {batch.role_counts()}")
        if texts:
            for entry_key, embedding in zip(ids, await self.embed_batch(texts)):
                vectors[entry_key] = embedding

        return EmbeddingMap(vectors)

    async def _post(self, client: httpx.AsyncClient, headers: dict, payload: dict) -> httpx.Response:
        return await client.post(self.api_url, headers=headers, json=payload)

    async def _send(self, headers: dict, payload: dict) -> httpx.Response:
        if self._http_client is not None:
            return await self._post(self._http_client, headers, payload)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await self._post(client, headers, payload)

    async def _embed_with_retry(self, texts: List[str]) -> List[List[float]]:
        """
        Call the HF API with exponential backoff for transient failures.

        HF free tier models "sleep" and take 15-20s to load on first query,
        so 503 responses, timeouts and network errors are retried. 429, 402
        and 401 are raised immediately as typed errors.
        """
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json"
        }

        payload = {
            "inputs": texts,
            "options": {
                "wait_for_model": True  # Wait for model to load if sleeping
            }
        }

        delay = self.initial_delay
        last_code = ProviderErrorCode.UNKNOWN_ERROR
        last_error = None

        for attempt in range(self.max_retries):
            try:
                start_time = time.time()
                response = await self._send(headers, payload)
                elapsed = time.time() - start_time

                # Handle 503 Service Unavailable (model loading)
                if response.status_code == 503:
                    last_code = ProviderErrorCode.MODEL_LOADING
                    last_error = f"Model failed to load after {self.max_retries} attempts"
                    logger.warning(
                        f"Model loading (503) on attempt {attempt + 1}/{self.max_retries}. "
                        f"Retrying in {delay}s..."
                    )
                    if attempt < self.max_retries - 1:
                        await asyncio.sleep(delay)
                        delay = min(delay * 2, 60.0)  # Exponential backoff, max 60s
                    continue

                if response.status_code == 429:
                    raise self._error(
                        ProviderErrorCode.RATE_LIMITED,
                        "Rate limit exceeded. Please try again later.",
                        status=429
                    )

                if response.status_code == 402:
                    raise self._error(
                        ProviderErrorCode.QUOTA_EXHAUSTED,
                        "Embedding API quota exhausted. Please check your billing.",
                        status=402
                    )

                if response.status_code == 401:
                    raise self._error(ProviderErrorCode.AUTHENTICATION_ERROR, "Invalid API key", status=401)

                if response.status_code != 200:
                    raise self._error(
                        ProviderErrorCode.API_ERROR,
                        f"API request failed with status {response.status_code}: {response.text}",
                        status=response.status_code
                    )

                embeddings = self._parse_embeddings(response, expected=len(texts))

                if elapsed > 10.0:
                    logger.info(
                        f"Model loading delay detected: {elapsed:.1f}s for {len(texts)} texts "
                        f"(attempt {attempt + 1})"
                    )
                else:
                    logger.debug(f"Generated embeddings for {len(texts)} texts in {elapsed:.2f}s")

                return embeddings

            except httpx.TimeoutException:
                last_code = ProviderErrorCode.TIMEOUT_ERROR
                last_error = f"Request timeout after {self.timeout}s"
                logger.error(f"{last_error} on attempt {attempt + 1}/{self.max_retries}")
                if attempt < self.max_retries - 1:
                    await asyncio.sleep(delay)
                    delay = min(delay * 2, 60.0)

            except httpx.RequestError as e:
                last_code = ProviderErrorCode.NETWORK_ERROR
                last_error = f"Network error: {str(e)}"
                logger.error(f"{last_error} on attempt {attempt + 1}/{self.max_retries}")
                if attempt < self.max_retries - 1:
                    await asyncio.sleep(delay)
                    delay = min(delay * 2, 60.0)

        # All retries exhausted
        raise self._error(
            last_code,
            f"Failed to generate embeddings after {self.max_retries} attempts. Last error: {last_error}",
            attempts=self.max_retries
        )

    def _parse_embeddings(self, response: httpx.Response, expected: int) -> List[List[float]]:
        try:
            embeddings = response.json()
        except ValueError:
            raise self._error(ProviderErrorCode.MALFORMED_RESPONSE, "Embedding response was not valid JSON")

        if not isinstance(embeddings, list) or len(embeddings) != expected:
            got = len(embeddings) if isinstance(embeddings, list) else type(embeddings).__name__
            raise self._error(
                ProviderErrorCode.MALFORMED_RESPONSE,
                f"Expected {expected} embeddings, got {got}",
            )

        for vector in embeddings:
            if not isinstance(vector, list) or not all(isinstance(v, (int, float)) for v in vector):
                raise self._error(
                    ProviderErrorCode.MALFORMED_RESPONSE,
                    "Embedding response contained a non-numeric vector",
                )

        return embeddings

    def _error(self, code: ProviderErrorCode, message: str, **details) -> ProviderClientError:
        details["model"] = self.model_name
        logger.error(message, extra={"error_code": code.value, "error_details": details})
        return ProviderClientError(ProviderError(code=code, message=message, details=details))

    async def warmup(self) -> bool:
        """
        Warm up the model with a dummy query to avoid cold start delays.

        Returns:
            True if warmup successful, False otherwise
        """
        try:
            logger.info("Warming up embedding model...")
            start_time = time.time()

            await self.embed_text("warmup query")

            elapsed = time.time() - start_time
            logger.info(f"Model warmup completed in {elapsed:.1f}s")
            return True

        except (ProviderClientError, httpx.HTTPError) as e:
            logger.error(f"Model warmup failed: {str(e)}")
            return False
