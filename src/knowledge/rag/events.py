"""Outbound event protocol of the answering pipeline.

Every notification sent to the caller is a ``PipelineEvent``: a type tag
plus a JSON-serializable payload. Events are emitted in strict
chronological order and each request ends with at most one terminal event
(``done`` or ``error``).

The helper constructors below are the only place event payloads are shaped,
so the pipeline and its tests agree on field names.
"""

from __future__ import annotations

import json
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from src.knowledge.models import Citation, RetrievedChunk

EventType = Literal[
    "status",
    "routing",
    "rewriting",
    "queries",
    "sources",
    "grading",
    "thinking",
    "token",
    "reflection",
    "done",
    "error",
]

TERMINAL_EVENTS: frozenset[str] = frozenset({"done", "error"})


class PipelineEvent(BaseModel):
    """A single progress or result notification.

    Attributes:
        type: Event type tag.
        payload: Event body; a string for status/thinking/token, a list for
            queries/sources, and a dict for everything else.
    """

    model_config = ConfigDict(frozen=True)

    type: EventType
    payload: Any = None

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENTS

    def to_sse(self) -> str:
        """Frame the event as one Server-Sent Events ``data:`` line."""
        body = json.dumps(self.model_dump(mode="json"), ensure_ascii=False)
        return f"data: {body}\n\n"


class DonePayload(BaseModel):
    """Body of the ``done`` event."""

    answer: str
    citations: list[Citation] = Field(default_factory=list)
    conversation_id: str
    message_id: str | None = None
    intent: str | None = None
    decision: str | None = None


# ── Constructors ─────────────────────────────────────────────────────────────


def status(message: str) -> PipelineEvent:
    return PipelineEvent(type="status", payload=message)


def routing(intent: str, confidence: float, reasoning: str) -> PipelineEvent:
    return PipelineEvent(
        type="routing",
        payload={"intent": intent, "confidence": confidence, "reasoning": reasoning},
    )


def rewriting(original: str, rewritten: str, entities: list[str]) -> PipelineEvent:
    return PipelineEvent(
        type="rewriting",
        payload={"original": original, "rewritten": rewritten, "entities": list(entities)},
    )


def queries(search_queries: list[str]) -> PipelineEvent:
    return PipelineEvent(type="queries", payload=list(search_queries))


def sources(chunks: list[RetrievedChunk]) -> PipelineEvent:
    """Unique ``{source_id, title}`` pairs, in first-seen order."""
    seen: set[str] = set()
    entries: list[dict[str, str]] = []
    for chunk in chunks:
        if chunk.source_id in seen:
            continue
        seen.add(chunk.source_id)
        entries.append({"source_id": chunk.source_id, "title": chunk.source_title})
    return PipelineEvent(type="sources", payload=entries)


def grading(decision: str, avg_score: float, relevant_count: int, total_count: int) -> PipelineEvent:
    return PipelineEvent(
        type="grading",
        payload={
            "decision": decision,
            "avg_score": avg_score,
            "relevant_count": relevant_count,
            "total_count": total_count,
        },
    )


def thinking(text: str) -> PipelineEvent:
    return PipelineEvent(type="thinking", payload=text)


def token(text: str) -> PipelineEvent:
    return PipelineEvent(type="token", payload=text)


def reflection(
    is_grounded: bool,
    answers_question: bool,
    completeness: float,
    overall_score: float,
    issues: list[str],
) -> PipelineEvent:
    return PipelineEvent(
        type="reflection",
        payload={
            "is_grounded": is_grounded,
            "answers_question": answers_question,
            "completeness": completeness,
            "overall_score": overall_score,
            "issues": list(issues),
        },
    )


def done(payload: DonePayload) -> PipelineEvent:
    return PipelineEvent(type="done", payload=payload.model_dump(mode="json"))


def error(message: str) -> PipelineEvent:
    return PipelineEvent(type="error", payload={"message": message})
