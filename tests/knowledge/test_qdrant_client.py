"""Tests for QdrantKnowledgeStore hybrid search.

Uses Qdrant local mode with tmp_path for isolated test instances. Chunks
are upserted directly with small hand-built vectors so dense similarity
is predictable; the embedding service is never called by the search path.
"""

from __future__ import annotations

import uuid

import pytest
from qdrant_client.models import PointStruct

from src.knowledge.config import KnowledgeBaseConfig
from src.knowledge.qdrant_client import QdrantKnowledgeStore, tokenize


# ── Helpers ─────────────────────────────────────────────────────────────────


def _point(
    collection_id: str,
    text: str,
    vector: list[float],
    source_id: str = "src-1",
    title: str | None = "Handbook",
    page: int | None = None,
) -> PointStruct:
    payload = {
        "collection_id": collection_id,
        "source_id": source_id,
        "text": text,
        "page": page,
    }
    if title is not None:
        payload["source_title"] = title
    return PointStruct(id=str(uuid.uuid4()), vector={"dense": vector}, payload=payload)


# ── Fixtures ────────────────────────────────────────────────────────────────


@pytest.fixture
def config(tmp_path) -> KnowledgeBaseConfig:
    """Create a KnowledgeBaseConfig pointing at a temporary directory."""
    return KnowledgeBaseConfig(
        qdrant_path=str(tmp_path / "qdrant_test"),
        openai_api_key="test-key-not-used",
        embedding_dimensions=3,
    )


@pytest.fixture
async def store(config):
    """Initialized store over a local Qdrant instance."""
    kb = QdrantKnowledgeStore(config)
    await kb.initialize_collections()
    yield kb
    await kb.close()


async def _seed(store: QdrantKnowledgeStore, points: list[PointStruct]) -> None:
    await store.client.upsert(collection_name="chunks", points=points)


# ── Collection bootstrap ────────────────────────────────────────────────────


class TestInitializeCollections:
    """Tests for collection creation."""

    async def test_creates_both_collections(self, store, config):
        assert await store.client.collection_exists(config.collection_chunks)
        assert await store.client.collection_exists(config.collection_conversations)

    async def test_initialize_is_idempotent(self, store, config):
        await _seed(store, [_point("coll-a", "Kept across re-init.", [1.0, 0.0, 0.0])])

        await store.initialize_collections()

        count = await store.client.count(collection_name=config.collection_chunks)
        assert count.count == 1


# ── Hybrid search ───────────────────────────────────────────────────────────


class TestHybridSearch:
    """Tests for dense + BM25 weighted search."""

    async def test_filters_by_collection_id(self, store):
        await _seed(
            store,
            [
                _point("coll-a", "Refunds within 30 days.", [1.0, 0.0, 0.0]),
                _point("coll-b", "Refunds within 60 days.", [1.0, 0.0, 0.0]),
            ],
        )

        results = await store.hybrid_search(
            [1.0, 0.0, 0.0], "refunds", "coll-a", limit=10,
            vector_weight=0.7, lexical_weight=0.3,
        )

        assert [r.text for r in results] == ["Refunds within 30 days."]

    async def test_dense_only_orders_by_similarity(self, store):
        await _seed(
            store,
            [
                _point("coll-a", "far", [0.0, 1.0, 0.0]),
                _point("coll-a", "near", [1.0, 0.1, 0.0]),
                _point("coll-a", "exact", [1.0, 0.0, 0.0]),
            ],
        )

        results = await store.hybrid_search(
            [1.0, 0.0, 0.0], "unrelated words", "coll-a", limit=3,
            vector_weight=1.0, lexical_weight=0.0,
        )

        assert [r.text for r in results] == ["exact", "near", "far"]
        assert results[0].similarity == pytest.approx(1.0, abs=1e-4)

    async def test_lexical_match_lifts_score(self, store):
        same = [1.0, 0.0, 0.0]
        await _seed(
            store,
            [
                _point("coll-a", "Shipping takes five days.", same),
                _point("coll-a", "Warranty claims need a receipt.", same),
                _point("coll-a", "Returns go to the depot.", same),
            ],
        )

        results = await store.hybrid_search(
            same, "warranty claims", "coll-a", limit=3,
            vector_weight=0.7, lexical_weight=0.3,
        )

        assert results[0].text == "Warranty claims need a receipt."
        assert results[0].similarity == pytest.approx(1.0, abs=1e-4)
        assert results[1].similarity == pytest.approx(0.7, abs=1e-4)

    async def test_limit_applied_after_rescoring(self, store):
        await _seed(
            store,
            [_point("coll-a", f"chunk {i}", [1.0, float(i), 0.0]) for i in range(6)],
        )

        results = await store.hybrid_search(
            [1.0, 0.0, 0.0], "chunk", "coll-a", limit=2,
            vector_weight=0.7, lexical_weight=0.3,
        )

        assert len(results) == 2
        assert results[0].similarity >= results[1].similarity

    async def test_payload_mapped_to_chunk(self, store):
        await _seed(
            store,
            [
                _point("coll-a", "Titled text", [1.0, 0.0, 0.0], source_id="doc-7", page=4),
                _point("coll-a", "Untitled text", [0.0, 1.0, 0.0], title=None),
            ],
        )

        results = await store.hybrid_search(
            [1.0, 0.0, 0.0], "text", "coll-a", limit=5,
            vector_weight=1.0, lexical_weight=0.0,
        )

        titled, untitled = results
        assert titled.source_id == "doc-7"
        assert titled.source_title == "Handbook"
        assert titled.page == 4
        uuid.UUID(titled.chunk_id)
        assert untitled.source_title == "Untitled"
        assert untitled.page is None

    async def test_empty_collection_returns_nothing(self, store):
        results = await store.hybrid_search(
            [1.0, 0.0, 0.0], "anything", "coll-empty", limit=5,
            vector_weight=0.7, lexical_weight=0.3,
        )
        assert results == []


class TestLexicalScores:
    """Tests for the BM25 scoring helper."""

    def test_tokenize_lowercases_words(self):
        assert tokenize("Refund-Policy, 30 days!") == ["refund", "policy", "30", "days"]

    def test_scores_normalized_to_unit_max(self):
        scores = QdrantKnowledgeStore._lexical_scores(
            "warranty",
            ["warranty warranty terms", "shipping", "returns", "exchanges"],
        )
        assert max(scores) == pytest.approx(1.0)
        assert scores[1:] == [0.0, 0.0, 0.0]
        assert all(0.0 <= s <= 1.0 for s in scores)

    def test_no_overlap_scores_zero(self):
        scores = QdrantKnowledgeStore._lexical_scores("", ["some text", "more"])
        assert scores == [0.0, 0.0]
