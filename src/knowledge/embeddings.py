"""Embedding service for dense vector generation.

Dense vectors capture semantic meaning via an OpenAI-compatible embeddings
endpoint (OpenAI, OpenRouter, or a local server). The lexical side of
hybrid search is scored at query time by the store, so only dense vectors
are produced here.

Query variants are embedded in one batched request. Rate limit handling
uses exponential backoff on embedding API calls.
"""

from __future__ import annotations

import asyncio
import logging

from openai import AsyncOpenAI, RateLimitError

from src.knowledge.config import KnowledgeBaseConfig

logger = logging.getLogger(__name__)


class EmbeddingService:
    """Generates dense embeddings for retrieval and storage.

    Args:
        config: Knowledge base configuration with API keys and model settings.
    """

    def __init__(self, config: KnowledgeBaseConfig) -> None:
        self._config = config
        self._openai = AsyncOpenAI(
            api_key=config.openai_api_key,
            base_url=config.embedding_base_url,
            timeout=config.request_timeout,
        )
        self._model = config.embedding_model
        self._dimensions = config.embedding_dimensions

    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Generate dense embeddings for a batch of texts in one request.

        Args:
            texts: Input texts to embed.

        Returns:
            One dense vector per input text, in input order.
        """
        if not texts:
            return []
        return await self._embed_dense(texts)

    async def embed_text(self, text: str) -> list[float]:
        """Generate the dense embedding for a single text."""
        vectors = await self._embed_dense([text])
        return vectors[0]

    async def _embed_dense(
        self, texts: list[str], max_retries: int = 3
    ) -> list[list[float]]:
        """Generate dense embeddings with exponential backoff.

        Args:
            texts: Input texts to embed.
            max_retries: Maximum retry attempts on rate limit errors.

        Returns:
            List of dense embedding vectors.

        Raises:
            RateLimitError: If all retries are exhausted.
        """
        for attempt in range(max_retries):
            try:
                response = await self._openai.embeddings.create(
                    input=texts,
                    model=self._model,
                    dimensions=self._dimensions,
                )
                # The API may return items out of order; index restores input order
                ordered = sorted(response.data, key=lambda item: item.index)
                return [item.embedding for item in ordered]
            except RateLimitError:
                if attempt == max_retries - 1:
                    raise
                wait_time = 2**attempt
                logger.warning(
                    "Embedding rate limit hit, retrying in %ds (attempt %d/%d)",
                    wait_time,
                    attempt + 1,
                    max_retries,
                )
                await asyncio.sleep(wait_time)

        raise RuntimeError("Exhausted retries for dense embedding")  # pragma: no cover
