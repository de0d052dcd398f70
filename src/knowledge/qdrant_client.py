"""Qdrant vector database client for collection-scoped hybrid search.

Wraps the async Qdrant Python client to provide:
- Payload-based collection isolation (collection_id with is_tenant=true index)
- Hybrid search combining dense (semantic) similarity with a BM25 lexical
  score over the dense candidate pool, fused by caller-supplied weights
- Collection bootstrap for the chunks and conversations collections

Chunks are written by the ingestion service; this store only reads them.
Every query carries a mandatory collection_id filter.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from qdrant_client import AsyncQdrantClient
from qdrant_client.http.models.models import KeywordIndexParams
from qdrant_client.models import (
    Distance,
    FieldCondition,
    Filter,
    MatchValue,
    PayloadSchemaType,
    VectorParams,
)
from rank_bm25 import BM25Okapi

from src.knowledge.config import KnowledgeBaseConfig
from src.knowledge.models import RetrievedChunk

logger = logging.getLogger(__name__)

_TOKEN_PATTERN = re.compile(r"\w+")

# Dense candidates fetched per requested result, rescored lexically
_CANDIDATE_FACTOR = 4
_MIN_CANDIDATES = 20


def tokenize(text: str) -> list[str]:
    return _TOKEN_PATTERN.findall(text.lower())


def create_qdrant_client(config: KnowledgeBaseConfig) -> AsyncQdrantClient:
    """Build an async Qdrant client: remote if a URL is configured, local otherwise.

    A ``qdrant_path`` of ":memory:" gives an in-process, non-persistent store.
    """
    if config.qdrant_url:
        return AsyncQdrantClient(url=config.qdrant_url, api_key=config.qdrant_api_key)
    if config.qdrant_path == ":memory:":
        return AsyncQdrantClient(location=":memory:")
    return AsyncQdrantClient(path=config.qdrant_path)


class QdrantKnowledgeStore:
    """Collection-scoped hybrid search over document chunks stored in Qdrant.

    Args:
        config: Knowledge base configuration.
        client: Optional pre-built async Qdrant client (tests use ":memory:").
    """

    def __init__(
        self,
        config: KnowledgeBaseConfig,
        client: AsyncQdrantClient | None = None,
    ) -> None:
        self._config = config
        self._client = client or create_qdrant_client(config)

    @property
    def client(self) -> AsyncQdrantClient:
        """Expose the underlying Qdrant client for advanced operations."""
        return self._client

    async def initialize_collections(self) -> None:
        """Create the chunks and conversations collections if missing."""
        await self._init_chunks_collection()
        await self._init_conversations_collection()
        logger.info("Qdrant collections initialized")

    async def _init_chunks_collection(self) -> None:
        name = self._config.collection_chunks

        if await self._client.collection_exists(name):
            logger.info("Collection %s already exists, skipping creation", name)
            return

        await self._client.create_collection(
            collection_name=name,
            vectors_config={
                "dense": VectorParams(
                    size=self._config.embedding_dimensions,
                    distance=Distance.COSINE,
                ),
            },
        )

        # collection_id with is_tenant=True for per-collection HNSW indexes
        await self._client.create_payload_index(
            collection_name=name,
            field_name="collection_id",
            field_schema=KeywordIndexParams(type="keyword", is_tenant=True),
        )
        await self._client.create_payload_index(
            collection_name=name,
            field_name="source_id",
            field_schema=PayloadSchemaType.KEYWORD,
        )

        logger.info("Created %s collection with hybrid search config", name)

    async def _init_conversations_collection(self) -> None:
        name = self._config.collection_conversations

        if await self._client.collection_exists(name):
            logger.info("Collection %s already exists, skipping creation", name)
            return

        await self._client.create_collection(
            collection_name=name,
            vectors_config={
                "dense": VectorParams(
                    size=self._config.embedding_dimensions,
                    distance=Distance.COSINE,
                ),
            },
        )

        for field in ["conversation_id", "kind"]:
            await self._client.create_payload_index(
                collection_name=name,
                field_name=field,
                field_schema=PayloadSchemaType.KEYWORD,
            )

        await self._client.create_payload_index(
            collection_name=name,
            field_name="timestamp",
            field_schema=PayloadSchemaType.FLOAT,
        )

        logger.info("Created %s collection", name)

    async def hybrid_search(
        self,
        embedding: list[float],
        query_text: str,
        collection_id: str,
        limit: int,
        vector_weight: float,
        lexical_weight: float,
    ) -> list[RetrievedChunk]:
        """Search one document collection with weighted dense + BM25 scoring.

        Fetches a dense candidate pool with the supplied embedding, scores
        the candidates' text against the query with BM25 Okapi, normalizes
        the BM25 scores to [0, 1] and combines them as
        ``vector_weight * dense + lexical_weight * lexical``. The weights
        are used verbatim and need not sum to 1.

        Args:
            embedding: Dense query vector.
            query_text: Raw query text for the lexical leg.
            collection_id: Document collection to search within.
            limit: Number of results to return.
            vector_weight: Weight of the dense similarity score.
            lexical_weight: Weight of the normalized BM25 score.

        Returns:
            RetrievedChunk objects ranked by combined score, at most ``limit``.
        """
        query_filter = Filter(
            must=[
                FieldCondition(key="collection_id", match=MatchValue(value=collection_id)),
            ]
        )

        response = await self._client.query_points(
            collection_name=self._config.collection_chunks,
            query=embedding,
            using="dense",
            query_filter=query_filter,
            limit=max(limit * _CANDIDATE_FACTOR, _MIN_CANDIDATES),
            with_payload=True,
        )
        points = response.points
        if not points:
            return []

        lexical = self._lexical_scores(
            query_text, [(p.payload or {}).get("text", "") for p in points]
        )

        chunks = [
            self._to_chunk(
                str(point.id),
                point.payload or {},
                vector_weight * point.score + lexical_weight * lex,
            )
            for point, lex in zip(points, lexical, strict=True)
        ]
        chunks.sort(key=lambda c: c.similarity, reverse=True)
        return chunks[:limit]

    @staticmethod
    def _lexical_scores(query_text: str, texts: list[str]) -> list[float]:
        query_tokens = tokenize(query_text)
        corpus = [tokenize(text) for text in texts]
        if not query_tokens or not any(corpus):
            return [0.0] * len(texts)

        scores = [float(s) for s in BM25Okapi(corpus).get_scores(query_tokens)]
        top = max(scores)
        if top <= 0:
            return [0.0] * len(texts)
        return [max(s, 0.0) / top for s in scores]

    @staticmethod
    def _to_chunk(point_id: str, payload: dict[str, Any], score: float) -> RetrievedChunk:
        return RetrievedChunk(
            chunk_id=point_id,
            source_id=str(payload.get("source_id", "")),
            source_title=payload.get("source_title") or "Untitled",
            page=payload.get("page"),
            text=payload.get("text", ""),
            similarity=score,
        )

    async def close(self) -> None:
        """Close the Qdrant client connection."""
        await self._client.close()
