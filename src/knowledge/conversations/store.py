"""Conversation and message persistence using Qdrant.

Persists conversation headers and messages in the Qdrant conversations
collection. Messages are stored with dense embeddings of their content so
that conversation history stays semantically searchable.

Key capabilities:
- Get-or-create a conversation for a document collection
- Append user and assistant messages (assistant messages carry citations)
- Retrieve the most recent history of a conversation, most-recent-last
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from qdrant_client import AsyncQdrantClient
from qdrant_client.models import (
    FieldCondition,
    Filter,
    MatchValue,
    OrderBy,
    PointStruct,
)

from src.knowledge.embeddings import EmbeddingService
from src.knowledge.models import Citation, ConversationMessage

logger = logging.getLogger(__name__)


class ConversationStore:
    """Conversation message storage backed by Qdrant.

    Args:
        qdrant_client: Initialized async Qdrant client instance.
        embedder: Embedding service for generating dense vectors.
        collection_name: Qdrant collection for conversations.
    """

    def __init__(
        self,
        qdrant_client: AsyncQdrantClient,
        embedder: EmbeddingService,
        collection_name: str = "conversations",
    ) -> None:
        self._client = qdrant_client
        self._embedder = embedder
        self._collection = collection_name

    async def get_or_create(
        self, conversation_id: str | None, collection_id: str
    ) -> str:
        """Return the given conversation ID, or create a new conversation.

        Args:
            conversation_id: Existing conversation to continue, if any.
            collection_id: Document collection the conversation is about.

        Returns:
            The conversation ID.
        """
        if conversation_id:
            return conversation_id

        new_id = str(uuid.uuid4())
        now = datetime.now(timezone.utc)
        await self._client.upsert(
            collection_name=self._collection,
            points=[
                PointStruct(
                    id=new_id,
                    vector={},
                    payload={
                        "kind": "conversation",
                        "conversation_id": new_id,
                        "collection_id": collection_id,
                        "timestamp": now.timestamp(),
                        "timestamp_iso": now.isoformat(),
                    },
                )
            ],
        )
        logger.info("Created conversation %s for collection %s", new_id, collection_id)
        return new_id

    async def append_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        citations: list[Citation] | None = None,
    ) -> str:
        """Persist a single message with its embedding.

        Args:
            conversation_id: Conversation to append to.
            role: "user" or "assistant".
            content: Message text.
            citations: Citations attached to an assistant answer.

        Returns:
            The new message ID.
        """
        message = ConversationMessage(
            conversation_id=conversation_id,
            role=role,
            content=content,
            citations=citations,
        )
        dense_vector = await self._embedder.embed_text(content)

        await self._client.upsert(
            collection_name=self._collection,
            points=[
                PointStruct(
                    id=message.id,
                    vector={"dense": dense_vector},
                    payload=self._message_to_payload(message),
                )
            ],
        )
        logger.debug(
            "Stored %s message %s for conversation %s",
            role,
            message.id,
            conversation_id,
        )
        return message.id

    async def get_history(
        self, conversation_id: str, limit: int = 10
    ) -> list[ConversationMessage]:
        """Retrieve the latest ``limit`` messages, ordered oldest first.

        Args:
            conversation_id: Conversation to read.
            limit: Maximum number of messages to return.

        Returns:
            ConversationMessage objects ordered by timestamp ascending.
        """
        points, _next_page = await self._client.scroll(
            collection_name=self._collection,
            scroll_filter=Filter(
                must=[
                    FieldCondition(
                        key="conversation_id", match=MatchValue(value=conversation_id)
                    ),
                    FieldCondition(key="kind", match=MatchValue(value="message")),
                ]
            ),
            limit=limit,
            order_by=OrderBy(key="timestamp", direction="desc"),
            with_payload=True,
            with_vectors=False,
        )

        messages = [self._payload_to_message(str(p.id), p.payload or {}) for p in points]
        messages.reverse()
        return messages

    # ── Internal helpers ───────────────────────────────────────────────────

    @staticmethod
    def _message_to_payload(message: ConversationMessage) -> dict[str, Any]:
        return {
            "kind": "message",
            "conversation_id": message.conversation_id,
            "role": message.role,
            "content": message.content,
            "citations": (
                [c.model_dump() for c in message.citations]
                if message.citations is not None
                else None
            ),
            "timestamp": message.timestamp.timestamp(),
            "timestamp_iso": message.timestamp.isoformat(),
        }

    @staticmethod
    def _payload_to_message(point_id: str, payload: dict[str, Any]) -> ConversationMessage:
        ts_value = payload.get("timestamp", 0)
        if isinstance(ts_value, (int, float)):
            timestamp = datetime.fromtimestamp(ts_value, tz=timezone.utc)
        else:
            timestamp = datetime.fromisoformat(str(ts_value))

        raw_citations = payload.get("citations")
        return ConversationMessage(
            id=point_id,
            conversation_id=payload.get("conversation_id", ""),
            role=payload.get("role", "user"),
            content=payload.get("content", ""),
            citations=(
                [Citation(**c) for c in raw_citations] if raw_citations is not None else None
            ),
            timestamp=timestamp,
        )
