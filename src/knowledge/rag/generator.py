"""Streaming answer generation with model fallback.

Builds a grounded system prompt from the surviving chunks, streams the
answer from the primary chat model and forwards every delta as soon as it
arrives: answer text as ``token`` events and provider reasoning as
``thinking`` events. Reasoning never becomes part of the answer text.

Fallback is a two-attempt state machine. When the first attempt fails and a
distinct fallback model is configured, generation switches model and retries
immediately; any other failure raises ``GenerationError``.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import aclosing
from typing import Any

from pydantic import BaseModel, ConfigDict

from src.knowledge.models import RetrievedChunk
from src.knowledge.rag import events
from src.knowledge.rag.events import PipelineEvent

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 2

ANSWER_SYSTEM_PROMPT = """You are a helpful assistant that answers questions based ONLY on the provided sources.

CRITICAL INSTRUCTIONS:
1. NEVER hallucinate or make up information. Only use facts from the provided sources.
2. If the answer is not in the sources, say "I couldn't find this information in your saved sources."
3. Always cite your sources using [Source N] format where N is the source number.
4. Be precise and factual. Do not speculate or add information beyond what's in the sources.
5. If sources contradict each other, mention this discrepancy.
6. Provide direct quotes when appropriate, using quotation marks.

AVAILABLE SOURCES:
{sources}

Remember: Only answer from the sources above. If you cannot find relevant information, clearly state this. Do NOT make up facts."""


class GenerationError(RuntimeError):
    """Raised when every generation attempt has failed."""


class GenerationResult(BaseModel):
    """Final outcome of one generation run.

    Attributes:
        answer: Concatenated answer text of the successful attempt.
        model: Model that produced the answer.
        attempts: Number of attempts made (1 or 2).
    """

    model_config = ConfigDict(frozen=True)

    answer: str
    model: str
    attempts: int = 1


def format_sources(chunks: list[RetrievedChunk]) -> str:
    """Render chunks as enumerated, delimited sources (1-based)."""
    blocks = []
    for i, chunk in enumerate(chunks, 1):
        page_info = f" (Page {chunk.page})" if chunk.page else ""
        blocks.append(
            f"---SOURCE {i}: [{chunk.source_title or 'Untitled'}]{page_info}---\n"
            f"{chunk.text}\n"
            f"---END SOURCE {i}---"
        )
    return "\n\n".join(blocks)


def build_system_prompt(chunks: list[RetrievedChunk]) -> str:
    return ANSWER_SYSTEM_PROMPT.format(sources=format_sources(chunks))


class AnswerGenerator:
    """Streams grounded answers, falling back to a second model once.

    Args:
        llm: LLM service exposing ``primary_model``, ``fallback_model`` and an
            async ``streaming_completion(messages, model=...)``.
        max_tokens: Maximum answer tokens per attempt.
    """

    def __init__(self, llm: Any, max_tokens: int | None = None) -> None:
        self._llm = llm
        self._max_tokens = max_tokens

    async def generate(
        self,
        query: str,
        chunks: list[RetrievedChunk],
    ) -> AsyncGenerator[PipelineEvent | GenerationResult, None]:
        """Stream an answer for ``query`` grounded in ``chunks``.

        Yields ``thinking``/``token`` events in provider order, a ``status``
        event when switching to the fallback model, and finally exactly one
        GenerationResult.

        Raises:
            GenerationError: If no attempt produced an answer.
        """
        messages = [
            {"role": "system", "content": build_system_prompt(chunks)},
            {"role": "user", "content": query},
        ]

        model = self._llm.primary_model
        fallback = self._llm.fallback_model
        attempt = 0

        while attempt < MAX_ATTEMPTS:
            parts: list[str] = []
            try:
                async with aclosing(
                    self._llm.streaming_completion(
                        messages=messages,
                        model=model,
                        max_tokens=self._max_tokens,
                        stage="generate",
                    )
                ) as stream:
                    async for delta in stream:
                        if delta.reasoning:
                            yield events.thinking(delta.reasoning)
                        if delta.content:
                            parts.append(delta.content)
                            yield events.token(delta.content)
            except Exception as exc:
                logger.warning("Chat completion failed with %s: %s", model, exc)
                if attempt == 0 and fallback and fallback != model:
                    model = fallback
                    attempt += 1
                    yield events.status("Switching to fallback model...")
                    continue
                raise GenerationError(f"Answer generation failed with {model}") from exc

            yield GenerationResult(answer="".join(parts), model=model, attempts=attempt + 1)
            return

        raise GenerationError("All chat completion attempts failed")
