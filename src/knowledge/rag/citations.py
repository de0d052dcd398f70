"""Citation extraction from generated answers.

Answers cite sources inline as ``[Source N]`` where N is the 1-based index
of the source in the generation prompt. Each referenced index becomes one
Citation, in order of first mention.
"""

from __future__ import annotations

import re

from src.knowledge.models import Citation, RetrievedChunk

CITATION_PATTERN = re.compile(r"\[Source\s*(\d+)\]", re.IGNORECASE)

SNIPPET_LENGTH = 200


def make_snippet(text: str, length: int = SNIPPET_LENGTH) -> str:
    if len(text) <= length:
        return text
    return text[: length - 3] + "..."


def extract_citations(answer: str, chunks: list[RetrievedChunk]) -> list[Citation]:
    """Map ``[Source N]`` markers in ``answer`` to the chunks they reference.

    Args:
        answer: Final answer text.
        chunks: Sources in prompt order (marker N refers to ``chunks[N-1]``).

    Returns:
        One Citation per distinct valid index; out-of-range markers are ignored.
    """
    citations: list[Citation] = []
    seen: set[int] = set()

    for match in CITATION_PATTERN.finditer(answer):
        idx = int(match.group(1)) - 1
        if idx in seen or not 0 <= idx < len(chunks):
            continue
        seen.add(idx)
        chunk = chunks[idx]
        citations.append(
            Citation(
                chunk_id=chunk.chunk_id,
                source_id=chunk.source_id,
                title=chunk.source_title,
                page=chunk.page,
                snippet=make_snippet(chunk.text),
            )
        )

    return citations
