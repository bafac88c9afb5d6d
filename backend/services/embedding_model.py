"""Embedding client for an OpenAI-compatible embeddings API."""
import asyncio
import time
import logging
from typing import List, Optional, Sequence
import httpx
import numpy as np
from config import EMBEDDING_API_KEY, EMBEDDING_ENDPOINT, EMBEDDING_MODEL, EMBEDDING_BATCH_SIZE

logger = logging.getLogger(__name__)


class EmbeddingError(RuntimeError):
    """Raised when the embedding API fails after all retries."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine similarity of two vectors.

    Returns 0.0 when the lengths differ or either vector has zero norm.
    """
    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)
    if va.shape != vb.shape:
        return 0.0

    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0
    return float(np.dot(va, vb) / denom)


class EmbeddingModel:
    """Async wrapper around the embeddings endpoint."""

    def __init__(
        self,
        api_key: Optional[str] = EMBEDDING_API_KEY,
        model_name: str = EMBEDDING_MODEL,
        endpoint: str = EMBEDDING_ENDPOINT,
        batch_size: int = EMBEDDING_BATCH_SIZE,
        max_retries: int = 3,
        initial_delay: float = 2.0,
        timeout: float = 60.0
    ):
        """
        Initialize the embedding client.

        Args:
            api_key: Bearer token for the embeddings API
            model_name: Embedding model identifier
            endpoint: Full URL of the embeddings endpoint
            batch_size: Maximum number of texts per HTTP request
            max_retries: Attempts per batch for 503s, timeouts and network errors
            initial_delay: Initial delay in seconds for exponential backoff
            timeout: Request timeout in seconds
        """
        if not api_key:
            raise ValueError("EMBEDDING_API_KEY environment variable is required")

        self.api_key = api_key
        self.model_name = model_name
        self.endpoint = endpoint
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.initial_delay = initial_delay
        self.timeout = timeout

        logger.info(f"Initialized EmbeddingModel with model: {model_name}")

    async def embed_text(self, text: str) -> List[float]:
        """
        Generate embedding for a single text string.

        Raises:
            ValueError: If text is empty
            EmbeddingError: If the API request fails
        """
        if not text or not text.strip():
            raise ValueError("Text cannot be empty")

        return (await self.embed_batch([text]))[0]

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """
        Generate embeddings for many texts.

        Texts are sent in sequential batches of ``batch_size`` so a large
        reindex never bursts the backend with parallel requests.

        Returns:
            One vector per input text, in input order

        Raises:
            ValueError: If texts list is empty
            EmbeddingError: If any batch fails
        """
        if not texts:
            raise ValueError("Texts list cannot be empty")

        embeddings: List[List[float]] = []
        for start in range(0, len(texts), self.batch_size):
            batch = texts[start:start + self.batch_size]
            embeddings.extend(await self._embed_with_retry(batch))

        return embeddings

    async def _embed_with_retry(self, texts: List[str]) -> List[List[float]]:
        """
        Call the embeddings endpoint for one batch with exponential backoff.

        Returns:
            Vectors re-sorted by the response ``index`` field
        """
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json"
        }
        payload = {"model": self.model_name, "input": texts}

        delay = self.initial_delay
        last_error = None

        for attempt in range(self.max_retries):
            try:
                start_time = time.time()

                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.endpoint, headers=headers, json=payload)

                elapsed = time.time() - start_time

                if response.status_code == 503:
                    logger.warning(
                        f"Embedding service unavailable (503) on attempt {attempt + 1}/{self.max_retries}. "
                        f"Retrying in {delay}s..."
                    )
                    last_error = "Service unavailable"
                    if attempt < self.max_retries - 1:
                        await asyncio.sleep(delay)
                        delay = min(delay * 2, 30.0)
                    continue

                if response.status_code != 200:
                    error_msg = f"Embedding API error: {response.status_code} - {response.text}"
                    logger.error(error_msg)
                    raise EmbeddingError(error_msg, status_code=response.status_code)

                data = response.json()["data"]
                ordered = sorted(data, key=lambda item: item["index"])

                logger.debug(f"Generated embeddings for {len(texts)} texts in {elapsed:.2f}s")
                return [item["embedding"] for item in ordered]

            except httpx.TimeoutException:
                last_error = f"Request timeout after {self.timeout}s"
            except httpx.RequestError as e:
                last_error = f"Network error: {e}"

            logger.error(f"{last_error} on attempt {attempt + 1}/{self.max_retries}")
            if attempt < self.max_retries - 1:
                await asyncio.sleep(delay)
                delay = min(delay * 2, 30.0)

        # All retries exhausted
        error_msg = f"Failed to generate embeddings after {self.max_retries} attempts. Last error: {last_error}"
        logger.error(error_msg)
        raise EmbeddingError(error_msg)
