"""Multi-query expansion for the agentic RAG pipeline.

Generates alternative phrasings of the effective question so retrieval can
fuse results across several search queries. The LLM is asked for a bare
JSON array of strings; parsing is defensive and any failure degrades to
searching with the question alone. Expansion is never a hard dependency.
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import aclosing
from typing import Any

logger = logging.getLogger(__name__)

EXPANSION_SYSTEM_PROMPT = """You are a search query generator. Given a user question, generate {count} alternative search queries that would help find relevant information.
Rules:
- Keep queries concise (max 10 words each)
- Make queries diverse but relevant to the original question
- Do not add new concepts not present in the original question
- Return ONLY a JSON array of strings, nothing else"""

EXPANSION_USER_PROMPT = """Generate {count} alternative search queries for: "{query}"

Return as JSON array, e.g.: ["query 1", "query 2"]"""


class QueryExpander:
    """Generates search query variants with one streaming LLM call.

    Args:
        llm: LLM service with an async ``streaming_completion(messages, ...)``.
        timeout: Deadline in seconds for the whole expansion call.
    """

    def __init__(self, llm: Any, timeout: float = 10.0) -> None:
        self._llm = llm
        self._timeout = timeout

    async def expand(self, query: str, count: int) -> list[str]:
        """Return ``[query, *variants]`` with at most ``count`` variants.

        Args:
            query: The effective (possibly rewritten) question.
            count: Maximum number of generated variants.

        Returns:
            Ordered, deduplicated search queries; element 0 is always ``query``.
        """
        if count <= 0 or not query.strip():
            return [query]

        try:
            text = await asyncio.wait_for(self._generate(query, count), self._timeout)
        except Exception:
            logger.warning(
                "Query expansion failed, searching with the original question only",
                exc_info=True,
            )
            return [query]

        variants = self.parse_queries(text)
        if variants is None:
            logger.warning("Failed to parse expansion response: %s", text)
            return [query]

        return self._merge(query, variants, count)

    async def _generate(self, query: str, count: int) -> str:
        messages = [
            {"role": "system", "content": EXPANSION_SYSTEM_PROMPT.format(count=count)},
            {"role": "user", "content": EXPANSION_USER_PROMPT.format(count=count, query=query)},
        ]

        parts: list[str] = []
        async with aclosing(
            self._llm.streaming_completion(
                messages=messages,
                max_tokens=200,
                temperature=0.7,
                stage="expand",
            )
        ) as stream:
            async for delta in stream:
                if delta.content:
                    parts.append(delta.content)
        return "".join(parts)

    @staticmethod
    def parse_queries(text: str) -> list[str] | None:
        """Extract the first top-level JSON array of strings from ``text``.

        Surrounding prose and code fences are ignored. Non-string items are
        dropped.

        Returns:
            The list of strings, or None if no array could be decoded.
        """
        decoder = json.JSONDecoder()
        start = text.find("[")
        while start != -1:
            try:
                data, _end = decoder.raw_decode(text, start)
            except json.JSONDecodeError:
                start = text.find("[", start + 1)
                continue
            if isinstance(data, list):
                return [item.strip() for item in data if isinstance(item, str) and item.strip()]
            start = text.find("[", start + 1)
        return None

    @staticmethod
    def _merge(query: str, variants: list[str], count: int) -> list[str]:
        queries = [query]
        seen = {query.strip().lower()}
        for variant in variants:
            key = variant.lower()
            if key in seen:
                continue
            seen.add(key)
            queries.append(variant)
            if len(queries) > count:
                break
        return queries
