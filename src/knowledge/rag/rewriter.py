"""Context-aware query rewriting for follow-up questions.

Resolves pronouns and references ("it", "that one", "the second option")
against recent conversation turns so the question can be searched on its
own. Rewriting is an enhancement: any failure keeps the original question.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from src.knowledge.models import ConversationMessage

logger = logging.getLogger(__name__)

REWRITE_PROMPT = """Rewrite the user's latest question so it can be understood without the conversation.

Rules:
1. Replace pronouns and vague references with the specific things they refer to.
2. Use ONLY concepts that appear in the conversation or the question. Do not add new facts.
3. If the question is already self-contained, return it unchanged and set "needs_context" to false.
4. Return ONLY a JSON object:
   {{"rewritten": "<question>", "needs_context": <true|false>, "entities": ["<resolved entity>", ...]}}

Conversation:
{history}

Latest question: {question}

JSON:"""


class RewriteResult(BaseModel):
    """Outcome of context-aware rewriting.

    Attributes:
        original: The question as asked.
        rewritten: The self-contained question (equal to original if unchanged).
        needs_context: Whether the question depended on the conversation.
        extracted_entities: Entities the references were resolved to.
    """

    model_config = ConfigDict(frozen=True)

    original: str
    rewritten: str
    needs_context: bool = False
    extracted_entities: list[str] = Field(default_factory=list)

    @property
    def changed(self) -> bool:
        """True when the rewrite should replace the original question."""
        return self.needs_context and self.rewritten.strip() != self.original.strip()


class ContextRewriter:
    """Rewrites follow-up questions against the last N conversation turns.

    Args:
        llm: LLM service with an async ``completion(messages, ...)`` method.
        max_turns: Number of most recent messages shown to the LLM.
        timeout: Deadline in seconds for the rewrite call.
    """

    def __init__(self, llm: Any, max_turns: int = 6, timeout: float = 10.0) -> None:
        self._llm = llm
        self._max_turns = max_turns
        self._timeout = timeout

    async def rewrite(
        self, question: str, history: list[ConversationMessage]
    ) -> RewriteResult:
        """Resolve references in ``question`` using ``history``.

        Returns an unchanged result (needs_context=False) when history is
        empty, the LLM call fails, or its output cannot be parsed.
        """
        unchanged = RewriteResult(original=question, rewritten=question)
        if not history:
            return unchanged

        turns = "\n".join(
            f"{m.role}: {m.content[:500]}" for m in history[-self._max_turns :]
        )

        try:
            response = await asyncio.wait_for(
                self._llm.completion(
                    messages=[
                        {
                            "role": "user",
                            "content": REWRITE_PROMPT.format(history=turns, question=question),
                        }
                    ],
                    max_tokens=200,
                    temperature=0.0,
                    stage="rewrite",
                ),
                self._timeout,
            )
        except Exception:
            logger.warning("Query rewrite failed, keeping original question", exc_info=True)
            return unchanged

        return self._parse_response(question, response["content"]) or unchanged

    @staticmethod
    def _parse_response(question: str, response: str) -> RewriteResult | None:
        start = response.find("{")
        end = response.rfind("}") + 1
        if start == -1 or end == 0:
            logger.warning("No JSON object in rewrite response: %s", response)
            return None

        try:
            data = json.loads(response[start:end])
        except json.JSONDecodeError:
            logger.warning("Failed to parse rewrite response: %s", response)
            return None
        if not isinstance(data, dict):
            return None

        rewritten = str(data.get("rewritten") or "").strip()
        if not rewritten:
            return None

        entities = data.get("entities") or []
        if not isinstance(entities, list):
            entities = []

        return RewriteResult(
            original=question,
            rewritten=rewritten,
            needs_context=bool(data.get("needs_context", False)),
            extracted_entities=[str(e) for e in entities if str(e).strip()],
        )
