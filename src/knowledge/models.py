"""Pydantic models for the Knowledge Base domain.

Defines the core types shared across storage and answering: the inbound
question with its conversation history, retrieved document chunks, and
the citations derived from a generated answer. All of them are frozen:
they are created once per answering request and never mutated after a
downstream stage has read them.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


# ── Conversation ─────────────────────────────────────────────────────────────


class ConversationMessage(BaseModel):
    """A single message in a conversation.

    History passed into the answering pipeline only needs role and content;
    the remaining fields are filled in by the conversation store.

    Attributes:
        role: Message author role.
        content: Message text content.
        id: Unique message identifier (UUID4).
        conversation_id: Conversation this message belongs to.
        citations: Structured citations attached to assistant answers.
        timestamp: When the message was persisted.
    """

    model_config = ConfigDict(frozen=True)

    role: Literal["user", "assistant"]
    content: str
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    conversation_id: str = ""
    citations: list[Citation] | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class Question(BaseModel):
    """Immutable input to the answering pipeline.

    Attributes:
        text: The natural-language question.
        collection_id: Document collection to answer against.
        conversation_id: Existing conversation to continue, if any.
        history: Prior messages, most-recent-last.
    """

    model_config = ConfigDict(frozen=True)

    text: str = Field(min_length=1)
    collection_id: str
    conversation_id: str | None = None
    history: list[ConversationMessage] = Field(default_factory=list)


# ── Retrieval ────────────────────────────────────────────────────────────────


class RetrievedChunk(BaseModel):
    """A stored passage returned by hybrid search.

    Attributes:
        chunk_id: Identity key of the chunk.
        source_id: Document the chunk belongs to.
        source_title: Title of that document.
        page: Page number within the document, when known.
        text: Passage text.
        similarity: Hybrid search score; the mean across query variants after fusion.
        query_count: How many query variants surfaced this chunk.
    """

    model_config = ConfigDict(frozen=True)

    chunk_id: str
    source_id: str
    source_title: str = "Untitled"
    page: int | None = None
    text: str
    similarity: float = 0.0
    query_count: int = 1


# ── Citations ────────────────────────────────────────────────────────────────


class Citation(BaseModel):
    """A reference from the generated answer back to a source chunk.

    Attributes:
        chunk_id: ID of the cited chunk.
        source_id: Document the chunk belongs to.
        title: Document title.
        page: Page number, when known.
        snippet: Leading excerpt of the chunk (at most 200 characters).
    """

    model_config = ConfigDict(frozen=True)

    chunk_id: str
    source_id: str
    title: str
    page: int | None = None
    snippet: str = ""


ConversationMessage.model_rebuild()
