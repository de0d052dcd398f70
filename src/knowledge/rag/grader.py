"""Corrective relevance grading (CRAG) of retrieved chunks.

Scores every retrieved chunk for relevance to the effective question in a
single LLM call and decides how the pipeline proceeds:

- every chunk clears the threshold -> ``proceed`` with all chunks
- only some clear it               -> ``proceed_filtered`` with that subset
- none clears it                   -> ``no_relevant_sources`` (abstain)

Unparseable LLM output falls back to a lexical-overlap heuristic. If the
grading call itself fails, grading degrades to ``proceed`` with the full,
unfiltered set so an otherwise answerable question is never blocked.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from src.knowledge.models import RetrievedChunk

logger = logging.getLogger(__name__)

CRAGDecision = Literal["proceed", "proceed_filtered", "no_relevant_sources"]

GRADING_PROMPT = """Rate how relevant each document is to the question, from 0.0 (unrelated) to 1.0 (directly answers it).
Return ONLY a JSON array with one number per document, in document order.

Question: {query}

Documents:
{documents}

JSON array:"""

_TOKEN_PATTERN = re.compile(r"[a-z0-9]+")

_STOP_WORDS = frozenset({
    "a", "an", "the", "and", "or", "but", "in", "on", "at", "to", "for",
    "of", "with", "by", "from", "as", "is", "was", "are", "were", "be",
    "been", "do", "does", "did", "it", "its", "this", "that", "these",
    "those", "i", "you", "we", "they", "my", "your", "our", "their",
    "what", "which", "who", "how", "when", "where", "why", "about", "can",
    "there", "any", "me", "tell",
})


class CRAGResult(BaseModel):
    """Outcome of relevance grading.

    Attributes:
        decision: How the pipeline should proceed.
        avg_relevance_score: Mean relevance over all graded chunks.
        relevant_chunks: Chunks to generate from (all of them on ``proceed``).
    """

    model_config = ConfigDict(frozen=True)

    decision: CRAGDecision
    avg_relevance_score: float = 0.0
    relevant_chunks: list[RetrievedChunk] = Field(default_factory=list)


class RelevanceGrader:
    """Grades retrieved chunks and gates generation on their relevance.

    Args:
        llm: LLM service with an async ``completion(messages, ...)`` method.
        threshold: Minimum relevance score for a chunk to count as relevant.
        timeout: Deadline in seconds for the grading call.
        snippet_chars: Characters of each chunk shown to the grader.
    """

    def __init__(
        self,
        llm: Any,
        threshold: float = 0.5,
        timeout: float = 10.0,
        snippet_chars: int = 500,
    ) -> None:
        self._llm = llm
        self._threshold = threshold
        self._timeout = timeout
        self._snippet_chars = snippet_chars

    async def grade(self, query: str, chunks: list[RetrievedChunk]) -> CRAGResult:
        """Grade ``chunks`` against ``query`` and decide how to proceed."""
        if not chunks:
            return CRAGResult(decision="no_relevant_sources")

        documents = "\n\n".join(
            f"[{i}] {chunk.text[: self._snippet_chars]}"
            for i, chunk in enumerate(chunks, 1)
        )
        prompt = GRADING_PROMPT.format(query=query, documents=documents)

        try:
            response = await asyncio.wait_for(
                self._llm.completion(
                    messages=[{"role": "user", "content": prompt}],
                    max_tokens=200,
                    temperature=0.0,
                    stage="grade",
                ),
                self._timeout,
            )
        except Exception:
            logger.warning("Relevance grading failed, proceeding with all chunks", exc_info=True)
            return CRAGResult(
                decision="proceed",
                avg_relevance_score=sum(c.similarity for c in chunks) / len(chunks),
                relevant_chunks=list(chunks),
            )

        scores = self._parse_scores(response["content"], len(chunks))
        if scores is None:
            logger.warning(
                "Unparseable grading response, using lexical heuristic: %s",
                response["content"],
            )
            scores = [heuristic_relevance(query, chunk.text) for chunk in chunks]

        return self.decide(chunks, scores)

    def decide(self, chunks: list[RetrievedChunk], scores: list[float]) -> CRAGResult:
        """Apply the threshold policy to per-chunk scores."""
        relevant = [c for c, s in zip(chunks, scores, strict=True) if s >= self._threshold]
        avg = sum(scores) / len(scores) if scores else 0.0

        if not relevant:
            decision: CRAGDecision = "no_relevant_sources"
        elif len(relevant) == len(chunks):
            decision = "proceed"
        else:
            decision = "proceed_filtered"

        logger.info(
            "Grading complete: %d/%d relevant (avg %.2f) -> %s",
            len(relevant),
            len(chunks),
            avg,
            decision,
        )
        return CRAGResult(decision=decision, avg_relevance_score=avg, relevant_chunks=relevant)

    @staticmethod
    def _parse_scores(response: str, expected: int) -> list[float] | None:
        """Return the first JSON array in ``response`` holding ``expected`` numbers.

        Arrays that fail to decode or hold the wrong count (e.g. a bracketed
        "[1]" in surrounding prose) are skipped. Scores are clamped to [0, 1].
        """
        decoder = json.JSONDecoder()
        start = response.find("[")
        while start != -1:
            try:
                data, _end = decoder.raw_decode(response, start)
            except json.JSONDecodeError:
                data = None
            if isinstance(data, list) and len(data) == expected:
                try:
                    return [min(max(float(item), 0.0), 1.0) for item in data]
                except (TypeError, ValueError):
                    pass
            start = response.find("[", start + 1)
        return None


def _content_terms(text: str) -> set[str]:
    return {t for t in _TOKEN_PATTERN.findall(text.lower()) if t not in _STOP_WORDS}


def heuristic_relevance(query: str, text: str) -> float:
    """Fraction of the query's content words that appear in ``text``."""
    query_terms = _content_terms(query)
    if not query_terms:
        return 0.0
    text_terms = _content_terms(text)
    # Prefix match so "refunds" covers "refund"
    hits = sum(
        1
        for term in query_terms
        if term in text_terms or any(t.startswith(term) or term.startswith(t) for t in text_terms if len(t) > 3)
    )
    return hits / len(query_terms)
