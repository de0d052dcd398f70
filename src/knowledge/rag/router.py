"""Query intent routing for the agentic RAG pipeline.

Classifies a question into one of a fixed set of intents. Cheap,
deterministic pattern matching runs first; a single LLM classification
call is made only when no pattern is conclusive.

Conversational filler (greetings, thanks, acknowledgements) is routed as
``chit_chat`` with ``skip_retrieval`` set and a canned response, which the
pipeline returns without touching retrieval at all.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from src.knowledge.models import ConversationMessage

logger = logging.getLogger(__name__)

QueryIntent = Literal[
    "lookup",
    "comparison",
    "summarization",
    "analytical",
    "follow_up",
    "chit_chat",
]

VALID_INTENTS: frozenset[str] = frozenset(
    {"lookup", "comparison", "summarization", "analytical", "follow_up", "chit_chat"}
)

CLASSIFICATION_PROMPT = """You classify questions asked against a personal document collection.

Intents:
- "lookup": a specific fact, definition, number, date or name
- "comparison": contrasting two or more things
- "summarization": an overview or summary of a document or topic
- "analytical": reasoning about causes, implications, trade-offs
- "follow_up": continues the previous turn and depends on it
- "chit_chat": greetings, thanks, small talk with no information need

Return ONLY a JSON object: {{"intent": "<intent>", "confidence": <0..1>, "reasoning": "<short reason>"}}

{history}Question: {question}

JSON:"""

GREETING_RESPONSE = (
    "Hello! Ask me anything about the documents in this collection."
)
THANKS_RESPONSE = (
    "You're welcome! Let me know if you have any other questions about your sources."
)
ACKNOWLEDGEMENT_RESPONSE = "Got it. Let me know if there's anything else you'd like to know."
CHIT_CHAT_RESPONSE = (
    "I'm here to answer questions about the documents in this collection. "
    "What would you like to know?"
)

# Each chit-chat pattern must match the whole (normalized) question
_CHIT_CHAT_PATTERNS: list[tuple[re.Pattern, str]] = [
    (
        re.compile(
            r"^(hi|hello|hey|hiya|yo|greetings|good (morning|afternoon|evening))"
            r"( there)?[!.\s]*$",
            re.IGNORECASE,
        ),
        GREETING_RESPONSE,
    ),
    (
        re.compile(
            r"^(thanks|thank you|thx|ty|cheers|much appreciated)"
            r"( (so|very) much| a lot)?[!.\s]*$",
            re.IGNORECASE,
        ),
        THANKS_RESPONSE,
    ),
    (
        re.compile(
            r"^(ok|okay|k|cool|great|nice|got it|sounds good|perfect|awesome|understood)"
            r"[!.\s]*$",
            re.IGNORECASE,
        ),
        ACKNOWLEDGEMENT_RESPONSE,
    ),
]

_INTENT_PATTERNS: list[tuple[str, re.Pattern]] = [
    (
        "comparison",
        re.compile(
            r"\b(compare|comparison|versus|vs\.?|difference(s)? between|"
            r"differ(s)? from|similarities|better than|worse than)\b",
            re.IGNORECASE,
        ),
    ),
    (
        "summarization",
        re.compile(
            r"\b(summari[sz]e|summary|overview|tl;?dr|key (points|takeaways)|"
            r"main (points|ideas)|gist)\b",
            re.IGNORECASE,
        ),
    ),
    (
        "analytical",
        re.compile(
            r"^(why|how come)\b|\b(analy[sz]e|analysis|implications?|impact of|"
            r"trade-?offs?|pros and cons|evaluate|what would happen)\b",
            re.IGNORECASE,
        ),
    ),
]

# Checked after the follow-up markers: a bare "what ..." is a lookup only
# when it does not continue the previous turn
_LOOKUP_PATTERN = re.compile(
    r"^(what|who|when|where|which|how (many|much|long|old)|is|are|does|do|"
    r"can|define|list|find)\b",
    re.IGNORECASE,
)

# Follow-up markers only count when there is a prior turn to follow
_FOLLOW_UP_PATTERN = re.compile(
    r"^(and|also|what about|how about|tell me more|more on|elaborate|"
    r"what else|why not)\b|\b(it|that|this|those|these|they|them|he|she)\b\??$",
    re.IGNORECASE,
)

_PATTERN_CONFIDENCE = 0.9


class RouterResult(BaseModel):
    """Outcome of intent classification for one question.

    Attributes:
        intent: Classified intent.
        confidence: Classification confidence in [0, 1].
        reasoning: Short explanation of the classification.
        skip_retrieval: True when the question needs no retrieval at all.
        suggested_response: Canned answer used when retrieval is skipped.
    """

    model_config = ConfigDict(frozen=True)

    intent: QueryIntent
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str = ""
    skip_retrieval: bool = False
    suggested_response: str | None = None


class IntentRouter:
    """Classifies question intent, pattern-first with an LLM fallback.

    Args:
        llm: LLM service with an async ``completion(messages, ...)`` method.
        timeout: Deadline in seconds for the classification call.
    """

    def __init__(self, llm: Any, timeout: float = 10.0) -> None:
        self._llm = llm
        self._timeout = timeout

    async def route(
        self,
        question: str,
        history: list[ConversationMessage] | None = None,
    ) -> RouterResult:
        """Classify a question, consulting the LLM only when patterns are inconclusive.

        Args:
            question: The user's question.
            history: Prior conversation turns, most-recent-last.

        Returns:
            RouterResult. Never raises: LLM failures yield ``lookup`` with
            zero confidence.
        """
        history = history or []

        matched = self.match_patterns(question, has_history=bool(history))
        if matched is not None:
            logger.debug("Routed by pattern: %s", matched.intent)
            return matched

        try:
            response = await asyncio.wait_for(
                self._llm.completion(
                    messages=[
                        {
                            "role": "user",
                            "content": CLASSIFICATION_PROMPT.format(
                                history=self._format_history(history),
                                question=question,
                            ),
                        }
                    ],
                    max_tokens=150,
                    temperature=0.0,
                    stage="route",
                ),
                self._timeout,
            )
            result = self._parse_response(response["content"])
            if result is not None:
                return result
            logger.warning("Unparseable intent classification: %s", response["content"])
        except Exception:
            logger.warning("Intent classification failed, defaulting to lookup", exc_info=True)

        return RouterResult(
            intent="lookup",
            confidence=0.0,
            reasoning="Classification unavailable; defaulting to lookup",
        )

    @staticmethod
    def match_patterns(question: str, has_history: bool = False) -> RouterResult | None:
        """Deterministic classification; returns None when no pattern is conclusive."""
        text = " ".join(question.strip().split())

        for pattern, canned in _CHIT_CHAT_PATTERNS:
            if pattern.match(text):
                return RouterResult(
                    intent="chit_chat",
                    confidence=0.95,
                    reasoning="Conversational filler",
                    skip_retrieval=True,
                    suggested_response=canned,
                )

        for intent, pattern in _INTENT_PATTERNS:
            if pattern.search(text):
                return RouterResult(
                    intent=intent,
                    confidence=_PATTERN_CONFIDENCE,
                    reasoning=f"Matched {intent} pattern",
                )

        if has_history and _FOLLOW_UP_PATTERN.search(text):
            return RouterResult(
                intent="follow_up",
                confidence=_PATTERN_CONFIDENCE,
                reasoning="References the previous turn",
            )

        if _LOOKUP_PATTERN.search(text):
            return RouterResult(
                intent="lookup",
                confidence=_PATTERN_CONFIDENCE,
                reasoning="Matched lookup pattern",
            )

        return None

    @staticmethod
    def _format_history(history: list[ConversationMessage]) -> str:
        if not history:
            return ""
        lines = [f"{m.role}: {m.content[:200]}" for m in history[-4:]]
        return "Recent conversation:\n" + "\n".join(lines) + "\n\n"

    @staticmethod
    def _parse_response(response: str) -> RouterResult | None:
        start = response.find("{")
        end = response.rfind("}") + 1
        if start == -1 or end == 0:
            return None

        try:
            data = json.loads(response[start:end])
        except json.JSONDecodeError:
            return None
        if not isinstance(data, dict):
            return None

        intent = str(data.get("intent", "")).strip().lower()
        if intent not in VALID_INTENTS:
            return None

        try:
            confidence = min(max(float(data.get("confidence", 0.5)), 0.0), 1.0)
        except (TypeError, ValueError):
            confidence = 0.5

        skip = intent == "chit_chat"
        return RouterResult(
            intent=intent,
            confidence=confidence,
            reasoning=str(data.get("reasoning", "")),
            skip_retrieval=skip,
            suggested_response=CHIT_CHAT_RESPONSE if skip else None,
        )
