"""
Query embedding client.

Sends the trimmed query text to the configured embedding service and returns
an L2-normalised float32 vector, the form the catalog's similarity search
expects.

Two response shapes are accepted:
    {"data": [{"embedding": [...]}]}   — OpenAI-compatible
    {"embeddings": [[...]]}            — DeepInfra native

No retries here: failures surface as EmbeddingUnavailable and fail the request.
"""

import logging
import time
from typing import Any

import httpx
import numpy as np

from course_search.config import Settings
from course_search.errors import EmbeddingUnavailable

log = logging.getLogger(__name__)


def normalize(vector: Any) -> np.ndarray:
    """Scale to unit L2 length; the zero vector is returned unchanged."""
    v = np.asarray(vector, dtype=np.float32)
    magnitude = float(np.linalg.norm(v))
    if magnitude == 0:
        return v
    return v / magnitude


def extract_embedding(payload: Any) -> list[float]:
    """Pull the first embedding out of either supported response shape."""
    if isinstance(payload, dict):
        data = payload.get("data")
        if isinstance(data, list) and data and isinstance(data[0], dict):
            embedding = data[0].get("embedding")
            if isinstance(embedding, list) and embedding:
                return embedding

        embeddings = payload.get("embeddings")
        if isinstance(embeddings, list) and embeddings:
            embedding = embeddings[0]
            if isinstance(embedding, list) and embedding:
                return embedding

    raise EmbeddingUnavailable("Unexpected embedding response format")


class EmbeddingClient:
    def __init__(self, settings: Settings, http: httpx.AsyncClient):
        self.settings = settings
        self.http = http

    async def embed(self, text: str) -> np.ndarray:
        """Return the normalised embedding of `text`."""
        if not self.settings.deepinfra_api_key:
            raise EmbeddingUnavailable("DEEPINFRA_API_KEY is not set")

        t0 = time.perf_counter()
        try:
            response = await self.http.post(
                self.settings.embedding_api_url,
                headers={"Authorization": f"Bearer {self.settings.deepinfra_api_key}"},
                json={"model": self.settings.embedding_model, "input": text},
                timeout=self.settings.request_timeout,
            )
        except httpx.HTTPError as exc:
            raise EmbeddingUnavailable(f"Embedding request failed: {exc!r}") from exc

        if response.is_error:
            raise EmbeddingUnavailable(
                f"Embedding request failed: {response.status_code} {response.reason_phrase}"
                f" - {response.text}",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise EmbeddingUnavailable("Embedding response is not JSON") from exc

        try:
            vector = normalize(extract_embedding(payload))
        except (TypeError, ValueError) as exc:
            raise EmbeddingUnavailable("Embedding contains non-numeric values") from exc
        if vector.ndim != 1:
            raise EmbeddingUnavailable(f"Embedding is not a flat vector (shape {vector.shape})")

        log.info(
            "Embedding done in %.2fs, length: %d", time.perf_counter() - t0, vector.shape[0]
        )
        return vector
