"""
Ollama embedding provider.

Calls Ollama's /api/embed endpoint, which accepts a list of inputs and
returns one vector per input in order. Useful for fully local search
indexes (e.g. nomic-embed-text, 768 dimensions).
"""

from __future__ import annotations

import logging

import httpx

from parley.backends.base import EmbeddingProvider
from parley.errors import LLMError

logger = logging.getLogger(__name__)

DEFAULT_OLLAMA_URL = "http://localhost:11434"


class OllamaEmbeddings(EmbeddingProvider):
    def __init__(self, model: str, url: str = DEFAULT_OLLAMA_URL, dimensions: int = 768, timeout: float = 30.0):
        self.model = model
        self.url = url.rstrip("/")
        self._dimensions = dimensions
        self.timeout = timeout

    def dimensions(self) -> int:
        return self._dimensions

    async def create_embedding(self, text: str) -> list[float]:
        vectors = await self.batch_create_embeddings([text])
        return vectors[0]

    async def batch_create_embeddings(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            try:
                resp = await client.post(
                    f"{self.url}/api/embed",
                    json={"model": self.model, "input": texts},
                )
                resp.raise_for_status()
            except httpx.HTTPStatusError as e:
                if e.response.status_code == 404:
                    raise LLMError(
                        f"Embedding model '{self.model}' not found; run: ollama pull {self.model}",
                        404,
                    ) from e
                raise LLMError(f"Embedding request failed: {e}", e.response.status_code) from e
            except httpx.HTTPError as e:
                raise LLMError(f"Embedding request failed: {e}") from e

            try:
                data = resp.json()
            except ValueError as e:
                raise LLMError(f"Embedding endpoint returned non-JSON response: {resp.text[:200]}") from e

        embeddings = data.get("embeddings") or []
        if len(embeddings) != len(texts):
            raise LLMError(
                f"Embedding model '{self.model}' returned {len(embeddings)} vectors for {len(texts)} inputs"
            )
        return embeddings
