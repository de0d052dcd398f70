"""Adaptive retrieval parameters per query intent.

Pure, total mapping from (intent, query length) to retrieval parameters:
comparison and analytical questions widen the evidence window, lookups and
follow-ups narrow it, and longer questions earn more expansion queries up
to a fixed ceiling.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from src.knowledge.rag.router import QueryIntent

# Characters of question text per extra expansion query
_LENGTH_STEP = 100


class RetrievalParams(BaseModel):
    """Retrieval settings derived for one question.

    The weights are passed to hybrid search verbatim and need not sum to 1.
    """

    model_config = ConfigDict(frozen=True)

    chunk_count: int = Field(ge=1)
    expansion_queries: int = Field(ge=0)
    vector_weight: float = Field(ge=0.0)
    lexical_weight: float = Field(ge=0.0)


_BASE_PARAMS: dict[str, RetrievalParams] = {
    "lookup": RetrievalParams(
        chunk_count=5, expansion_queries=1, vector_weight=0.6, lexical_weight=0.4
    ),
    "follow_up": RetrievalParams(
        chunk_count=5, expansion_queries=1, vector_weight=0.7, lexical_weight=0.3
    ),
    "comparison": RetrievalParams(
        chunk_count=10, expansion_queries=3, vector_weight=0.7, lexical_weight=0.3
    ),
    "analytical": RetrievalParams(
        chunk_count=10, expansion_queries=3, vector_weight=0.8, lexical_weight=0.2
    ),
    "summarization": RetrievalParams(
        chunk_count=12, expansion_queries=2, vector_weight=0.8, lexical_weight=0.2
    ),
    "chit_chat": RetrievalParams(
        chunk_count=3, expansion_queries=0, vector_weight=0.7, lexical_weight=0.3
    ),
}

_DEFAULT_PARAMS = _BASE_PARAMS["lookup"]


def plan_retrieval(
    intent: QueryIntent | str,
    query_length: int,
    max_expansion_queries: int = 4,
) -> RetrievalParams:
    """Map intent and query length to retrieval parameters.

    Args:
        intent: Classified intent. Unknown values fall back to lookup.
        query_length: Length of the effective question in characters.
        max_expansion_queries: Ceiling on expansion queries.

    Returns:
        RetrievalParams with chunk_count >= 1 and expansion_queries >= 0.
    """
    base = _BASE_PARAMS.get(intent, _DEFAULT_PARAMS)

    expansion = base.expansion_queries
    if expansion > 0:
        expansion += max(query_length, 0) // _LENGTH_STEP
    expansion = max(0, min(expansion, max_expansion_queries))

    return base.model_copy(update={"expansion_queries": expansion})
