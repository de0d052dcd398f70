"""Shared test doubles for the answering pipeline.

Provides:
- MockLLM: scripted completion and streaming responses keyed by stage,
  with per-model failure injection and a call log
- MockEmbedder: deterministic batched embeddings
- MockSearchService: hybrid search returning fixed chunks per query text
- InMemoryConversationStore: conversation store with a write log
- Factories exposed as fixtures so test modules can build their own setups
"""

from __future__ import annotations

import asyncio
import re
import uuid
from typing import Any

import pytest

from src.app.services.llm import LLMServiceError, StreamDelta
from src.knowledge.models import Citation, ConversationMessage, RetrievedChunk


# ── Helpers ──────────────────────────────────────────────────────────────────


def make_chunk(
    chunk_id: str,
    text: str = "Chunk text",
    source_id: str | None = None,
    title: str = "Policy Handbook",
    similarity: float = 0.8,
    page: int | None = None,
) -> RetrievedChunk:
    return RetrievedChunk(
        chunk_id=chunk_id,
        source_id=source_id or f"src-{chunk_id}",
        source_title=title,
        page=page,
        text=text,
        similarity=similarity,
    )


def split_tokens(text: str) -> list[str]:
    """Split text into word tokens, keeping trailing whitespace attached."""
    return re.findall(r"\S+\s*", text) or [text]


# ── Mock LLM ────────────────────────────────────────────────────────────────


class MockLLM:
    """Mock LLM service with scripted responses per pipeline stage.

    ``completions`` maps a stage ("route", "rewrite", "grade", "reflect") to a
    response string, an exception, or a list of those consumed in order.
    ``streams`` does the same for streaming stages ("expand", "generate").
    Any model listed in ``failing_models`` fails every streaming call, and
    ``completion_delay`` stalls every non-streaming call.
    """

    def __init__(
        self,
        completions: dict[str, Any] | None = None,
        streams: dict[str, Any] | None = None,
        primary_model: str = "primary-model",
        fallback_model: str | None = "fallback-model",
        failing_models: set[str] | None = None,
        reasoning: str = "",
        completion_delay: float = 0.0,
    ) -> None:
        self.completions = {k: self._as_queue(v) for k, v in (completions or {}).items()}
        self.streams = {k: self._as_queue(v) for k, v in (streams or {}).items()}
        self.primary_model = primary_model
        self.fallback_model = fallback_model
        self.failing_models = failing_models or set()
        self.reasoning = reasoning
        self.completion_delay = completion_delay
        self.calls: list[tuple[str, str]] = []
        self.closed_streams = 0

    @staticmethod
    def _as_queue(value: Any) -> list[Any]:
        return list(value) if isinstance(value, list) else [value]

    @staticmethod
    def _next(queue: list[Any]) -> Any:
        # The last scripted response repeats once the queue runs dry
        return queue.pop(0) if len(queue) > 1 else queue[0]

    def stage_calls(self, stage: str) -> list[tuple[str, str]]:
        return [call for call in self.calls if call[0] == stage]

    async def completion(
        self,
        messages: list[dict],
        max_tokens: int = 1024,
        temperature: float = 0.0,
        stage: str = "completion",
    ) -> dict:
        self.calls.append((stage, self.primary_model))
        if self.completion_delay:
            await asyncio.sleep(self.completion_delay)
        if stage not in self.completions:
            raise LLMServiceError(f"No scripted completion for stage {stage}")
        response = self._next(self.completions[stage])
        if isinstance(response, Exception):
            raise response
        return {"content": response, "model": self.primary_model, "usage": {}}

    async def streaming_completion(
        self,
        messages: list[dict],
        model: str | None = None,
        max_tokens: int | None = None,
        temperature: float = 0.7,
        stage: str = "completion",
    ):
        model = model or self.primary_model
        self.calls.append((stage, model))
        if model in self.failing_models:
            raise LLMServiceError(f"{model} returned 503")
        if stage not in self.streams:
            raise LLMServiceError(f"No scripted stream for stage {stage}")
        response = self._next(self.streams[stage])
        if isinstance(response, Exception):
            raise response

        try:
            if self.reasoning and stage == "generate":
                yield StreamDelta(reasoning=self.reasoning)
            for piece in split_tokens(response):
                yield StreamDelta(content=piece)
        finally:
            self.closed_streams += 1


# ── Mock collaborators ──────────────────────────────────────────────────────


class MockEmbedder:
    """Deterministic embedder: one short vector per text, batched."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.batches: list[list[str]] = []

    async def embed(self, texts: list[str]) -> list[list[float]]:
        self.batches.append(list(texts))
        if self.fail:
            raise ConnectionError("embedding service unavailable")
        return [[float(len(text)), float(i)] for i, text in enumerate(texts)]

    async def embed_text(self, text: str) -> list[float]:
        vectors = await self.embed([text])
        return vectors[0]


class MockSearchService:
    """Hybrid search double.

    Returns ``results[query_text]`` when present, else ``default``. Query
    texts listed in ``failing_queries`` raise.
    """

    def __init__(
        self,
        default: list[RetrievedChunk] | None = None,
        results: dict[str, list[RetrievedChunk]] | None = None,
        failing_queries: set[str] | None = None,
    ) -> None:
        self.default = default or []
        self.results = results or {}
        self.failing_queries = failing_queries or set()
        self.calls: list[dict[str, Any]] = []

    async def hybrid_search(
        self,
        embedding: list[float],
        query_text: str,
        collection_id: str,
        limit: int,
        vector_weight: float,
        lexical_weight: float,
    ) -> list[RetrievedChunk]:
        self.calls.append(
            {
                "query_text": query_text,
                "collection_id": collection_id,
                "limit": limit,
                "vector_weight": vector_weight,
                "lexical_weight": lexical_weight,
            }
        )
        if query_text in self.failing_queries:
            raise TimeoutError(f"search timed out for {query_text!r}")
        return list(self.results.get(query_text, self.default))[:limit]


class InMemoryConversationStore:
    """Conversation store double that records every write."""

    def __init__(
        self,
        history: list[ConversationMessage] | None = None,
        fail_create: bool = False,
        fail_assistant_write: bool = False,
    ) -> None:
        self.history = history or []
        self.fail_create = fail_create
        self.fail_assistant_write = fail_assistant_write
        self.messages: list[ConversationMessage] = []
        self.created: list[str] = []

    async def get_or_create(self, conversation_id: str | None, collection_id: str) -> str:
        if self.fail_create:
            raise ConnectionError("conversation store unavailable")
        if conversation_id:
            return conversation_id
        new_id = f"conv-{uuid.uuid4().hex[:8]}"
        self.created.append(new_id)
        return new_id

    async def append_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        citations: list[Citation] | None = None,
    ) -> str:
        if role == "assistant" and self.fail_assistant_write:
            raise ConnectionError("write failed")
        message = ConversationMessage(
            conversation_id=conversation_id,
            role=role,
            content=content,
            citations=citations,
        )
        self.messages.append(message)
        return message.id

    async def get_history(self, conversation_id: str, limit: int = 10) -> list[ConversationMessage]:
        return self.history[-limit:]

    def messages_by_role(self, role: str) -> list[ConversationMessage]:
        return [m for m in self.messages if m.role == role]


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def refund_chunk() -> RetrievedChunk:
    return make_chunk(
        "chunk-refund",
        text="Refunds are available within 30 days.",
        source_id="src-policy",
        title="Refund Policy",
        similarity=0.92,
    )


@pytest.fixture
def mock_embedder() -> MockEmbedder:
    return MockEmbedder()


@pytest.fixture
def conversation_store() -> InMemoryConversationStore:
    return InMemoryConversationStore()
