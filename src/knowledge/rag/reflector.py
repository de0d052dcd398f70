"""Self-reflective grading of a generated answer.

After the first generation attempt, an LLM judges whether the answer is
grounded in the sources, whether it answers the question, and how complete
it is. The pipeline regenerates once when the grade says so. Grading is
advisory: any failure returns None and the answer already generated stands.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from src.knowledge.models import RetrievedChunk

logger = logging.getLogger(__name__)

REFLECTION_PROMPT = """You are a strict reviewer of answers produced from source documents.

Question: {query}

Sources:
{sources}

Answer:
{answer}

Evaluate the answer and return ONLY a JSON object:
{{"is_grounded": <true if every claim is supported by the sources>,
 "answers_question": <true if it addresses the question>,
 "completeness": <0.0-1.0, how fully the sources were used to answer>,
 "issues": ["<short description of each problem>"]}}

JSON:"""

GROUNDED_WEIGHT = 0.4
ANSWERS_WEIGHT = 0.3
COMPLETENESS_WEIGHT = 0.3


class AnswerGrade(BaseModel):
    """Quality assessment of a generated answer."""

    model_config = ConfigDict(frozen=True)

    is_grounded: bool
    answers_question: bool
    completeness: float = Field(ge=0.0, le=1.0)
    overall_score: float = Field(ge=0.0, le=1.0)
    issues: list[str] = Field(default_factory=list)
    should_retry: bool = False


class AnswerReflector:
    """Grades answers for groundedness and completeness.

    Args:
        llm: LLM service with an async ``completion(messages, ...)`` method.
        threshold: Overall score below which a regeneration is requested.
        min_length: Answers of this many characters or fewer are not graded.
        timeout: Deadline in seconds for the grading call.
    """

    def __init__(
        self,
        llm: Any,
        threshold: float = 0.6,
        min_length: int = 50,
        timeout: float = 10.0,
    ) -> None:
        self._llm = llm
        self._threshold = threshold
        self._min_length = min_length
        self._timeout = timeout

    def should_grade(self, answer: str) -> bool:
        return len(answer) > self._min_length

    async def grade(
        self,
        query: str,
        answer: str,
        chunks: list[RetrievedChunk],
    ) -> AnswerGrade | None:
        """Grade ``answer`` against ``chunks``; None when grading is unavailable."""
        sources = "\n\n".join(
            f"[{i}] {chunk.source_title}: {chunk.text[:800]}"
            for i, chunk in enumerate(chunks, 1)
        )

        try:
            response = await asyncio.wait_for(
                self._llm.completion(
                    messages=[
                        {
                            "role": "user",
                            "content": REFLECTION_PROMPT.format(
                                query=query, sources=sources, answer=answer
                            ),
                        }
                    ],
                    max_tokens=300,
                    temperature=0.0,
                    stage="reflect",
                ),
                self._timeout,
            )
        except Exception:
            logger.warning("Answer reflection failed, keeping generated answer", exc_info=True)
            return None

        grade = self.parse_grade(response["content"])
        if grade is None:
            logger.warning("Unparseable reflection response: %s", response["content"])
        return grade

    def parse_grade(self, response: str) -> AnswerGrade | None:
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

        try:
            completeness = min(max(float(data.get("completeness", 0.0)), 0.0), 1.0)
        except (TypeError, ValueError):
            return None

        is_grounded = bool(data.get("is_grounded", False))
        answers_question = bool(data.get("answers_question", False))
        issues = data.get("issues") or []
        if not isinstance(issues, list):
            issues = [str(issues)]

        return self.score(is_grounded, answers_question, completeness, [str(i) for i in issues])

    def score(
        self,
        is_grounded: bool,
        answers_question: bool,
        completeness: float,
        issues: list[str] | None = None,
    ) -> AnswerGrade:
        """Combine the three judgements into an overall score and retry flag."""
        overall = (
            GROUNDED_WEIGHT * float(is_grounded)
            + ANSWERS_WEIGHT * float(answers_question)
            + COMPLETENESS_WEIGHT * completeness
        )
        overall = round(min(max(overall, 0.0), 1.0), 4)
        return AnswerGrade(
            is_grounded=is_grounded,
            answers_question=answers_question,
            completeness=completeness,
            overall_score=overall,
            issues=issues or [],
            should_retry=not is_grounded or overall < self._threshold,
        )
