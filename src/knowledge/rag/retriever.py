"""Multi-query fusion retriever for the agentic RAG pipeline.

Embeds every query variant in one batched call, runs one hybrid search per
variant against the document collection, and merges the results by chunk
ID. A chunk surfaced by several variants keeps the arithmetic mean of all
its scores and counts how many variants found it. The merged set is ranked
by score and truncated to the planned chunk count.

A failed search for one variant is logged and skipped; the others still run.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from src.knowledge.models import RetrievedChunk
from src.knowledge.rag.planner import RetrievalParams

logger = logging.getLogger(__name__)


@dataclass
class _FusedEntry:
    chunk: RetrievedChunk
    score_sum: float
    hits: int


def fuse_results(result_sets: list[list[RetrievedChunk]], limit: int) -> list[RetrievedChunk]:
    """Merge per-query results by chunk ID with score averaging.

    The merge is independent of the order of ``result_sets``: scores are
    averaged over all hits and ties are broken by chunk ID.

    Args:
        result_sets: One ranked result list per query variant.
        limit: Maximum number of chunks to return.

    Returns:
        Fused chunks sorted by mean similarity, descending.
    """
    fused: dict[str, _FusedEntry] = {}
    for results in result_sets:
        for chunk in results:
            entry = fused.get(chunk.chunk_id)
            if entry is None:
                fused[chunk.chunk_id] = _FusedEntry(chunk=chunk, score_sum=chunk.similarity, hits=1)
            else:
                entry.score_sum += chunk.similarity
                entry.hits += 1

    merged = [
        entry.chunk.model_copy(
            update={"similarity": entry.score_sum / entry.hits, "query_count": entry.hits}
        )
        for entry in fused.values()
    ]
    merged.sort(key=lambda c: (-c.similarity, c.chunk_id))
    return merged[:limit]


class FusionRetriever:
    """Retrieves chunks for several query variants and fuses the results.

    Args:
        embedder: Embedding service with an async batched ``embed(texts)``.
        search_service: Hybrid search service with an async ``hybrid_search``.
        timeout: Deadline in seconds for each embedding or search call.
    """

    def __init__(self, embedder: Any, search_service: Any, timeout: float = 10.0) -> None:
        self._embedder = embedder
        self._search = search_service
        self._timeout = timeout

    async def retrieve(
        self,
        queries: list[str],
        collection_id: str,
        params: RetrievalParams,
    ) -> list[RetrievedChunk]:
        """Retrieve and fuse chunks for all query variants.

        Args:
            queries: Search queries; element 0 is the effective question.
            collection_id: Document collection to search.
            params: Planned chunk count and hybrid weights.

        Returns:
            Up to ``params.chunk_count`` fused chunks, best first. Empty when
            nothing matched.

        Raises:
            Exception: If the batched embedding call fails or times out.
        """
        if not queries:
            return []

        embeddings = await asyncio.wait_for(self._embedder.embed(queries), self._timeout)

        result_sets: list[list[RetrievedChunk]] = []
        for query, embedding in zip(queries, embeddings, strict=True):
            try:
                results = await asyncio.wait_for(
                    self._search.hybrid_search(
                        embedding=embedding,
                        query_text=query,
                        collection_id=collection_id,
                        limit=params.chunk_count,
                        vector_weight=params.vector_weight,
                        lexical_weight=params.lexical_weight,
                    ),
                    self._timeout,
                )
            except Exception:
                logger.warning("Search failed for query: %s", query, exc_info=True)
                continue

            logger.debug("Query %r returned %d chunks", query, len(results))
            result_sets.append(results)

        merged = fuse_results(result_sets, params.chunk_count)
        logger.info(
            "Fused %d result sets into %d chunks for collection %s",
            len(result_sets),
            len(merged),
            collection_id,
        )
        return merged
