"""Agentic RAG answering pipeline.

Implements the ask flow as an explicit finite-state machine:

  route -> (shortcut | rewrite) -> plan -> expand -> retrieve
        -> (no sources | grade) -> (abstain | generate <-> reflect)
        -> cite -> persist -> done

Each stage handler is an async generator that yields the PipelineEvents it
produces followed by exactly one StageResult: ``Advance`` names the next
stage, ``Finish`` carries a terminal answer. The main loop forwards events
to the caller as they arrive, so answer tokens are never buffered.

The pipeline owns conversation persistence: one write for the user's
question right after admission and one for the final assistant answer,
however many regenerations happened in between. Any unhandled exception
ends the stream with a single ``error`` event and no ``done`` event.
Cancellation is never treated as an error: it propagates, closes the
upstream LLM stream, and no further events or writes are attempted.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import structlog

from src.app.core.monitoring import record_ask_outcome
from src.knowledge.config import KnowledgeBaseConfig
from src.knowledge.models import Citation, ConversationMessage, Question, RetrievedChunk
from src.knowledge.rag import events
from src.knowledge.rag.citations import extract_citations
from src.knowledge.rag.events import DonePayload, PipelineEvent
from src.knowledge.rag.expander import QueryExpander
from src.knowledge.rag.generator import AnswerGenerator, GenerationResult
from src.knowledge.rag.grader import CRAGResult, RelevanceGrader
from src.knowledge.rag.planner import RetrievalParams, plan_retrieval
from src.knowledge.rag.reflector import AnswerGrade, AnswerReflector
from src.knowledge.rag.retriever import FusionRetriever
from src.knowledge.rag.rewriter import ContextRewriter
from src.knowledge.rag.router import IntentRouter, RouterResult

logger = structlog.get_logger(__name__)

NO_SOURCES_RESPONSE = "I couldn't find any relevant information in your saved sources."
NO_RELEVANT_SOURCES_RESPONSE = (
    "I found some sources, but none of them appear to be relevant to your question. "
    "Could you try rephrasing or asking about a different topic?"
)

CONVERSATION_ERROR = "Failed to create conversation"
GENERATION_ERROR = "Failed to generate response"


class AskError(RuntimeError):
    """Raised by ``AskPipeline.ask`` when the stream ended with an error event."""


class Stage(str, Enum):
    ROUTE = "route"
    REWRITE = "rewrite"
    PLAN = "plan"
    EXPAND = "expand"
    RETRIEVE = "retrieve"
    GRADE = "grade"
    GENERATE = "generate"
    REFLECT = "reflect"
    CITE = "cite"


@dataclass(frozen=True)
class Advance:
    """Transition to another stage."""

    stage: Stage


@dataclass(frozen=True)
class Finish:
    """Terminal answer; the pipeline persists it and emits ``done``.

    Attributes:
        answer: Final answer text.
        outcome: answered | shortcut | no_sources | abstained.
        citations: Structured citations for the answer.
        decision: CRAG decision, or None when grading did not run.
    """

    answer: str
    outcome: str
    citations: list[Citation] = field(default_factory=list)
    decision: str | None = None


StageResult = Advance | Finish
StageHandler = AsyncGenerator[PipelineEvent | StageResult, None]


@dataclass
class _AskState:
    """Per-request working state, owned by a single task."""

    question: Question
    conversation_id: str = ""
    history: list[ConversationMessage] = field(default_factory=list)
    effective_query: str = ""
    routing: RouterResult | None = None
    params: RetrievalParams | None = None
    search_queries: list[str] = field(default_factory=list)
    retrieved: list[RetrievedChunk] = field(default_factory=list)
    crag: CRAGResult | None = None
    context_chunks: list[RetrievedChunk] = field(default_factory=list)
    answer: str = ""
    model: str = ""
    generation_attempts: int = 0
    retry_count: int = 0
    answer_grade: AnswerGrade | None = None


class AskPipeline:
    """Agentic RAG orchestrator over the answering stages.

    Args:
        llm: LLM service (``completion`` + ``streaming_completion``).
        embedder: Embedding service with batched ``embed`` and ``embed_text``.
        search_service: Hybrid search service with ``hybrid_search``.
        conversations: Conversation store.
        config: Answering policy and retrieval defaults.
        max_answer_tokens: Token cap per generation attempt.
    """

    def __init__(
        self,
        llm: Any,
        embedder: Any,
        search_service: Any,
        conversations: Any,
        config: KnowledgeBaseConfig | None = None,
        max_answer_tokens: int | None = None,
    ) -> None:
        self._config = config or KnowledgeBaseConfig()
        self._embedder = embedder
        self._search = search_service
        self._conversations = conversations

        timeout = self._config.request_timeout
        self._router = IntentRouter(llm, timeout=timeout)
        self._rewriter = ContextRewriter(llm, timeout=timeout)
        self._expander = QueryExpander(llm, timeout=timeout)
        self._retriever = FusionRetriever(embedder, search_service, timeout=timeout)
        self._grader = RelevanceGrader(
            llm, threshold=self._config.relevance_threshold, timeout=timeout
        )
        self._generator = AnswerGenerator(llm, max_tokens=max_answer_tokens)
        self._reflector = AnswerReflector(
            llm,
            threshold=self._config.reflection_threshold,
            min_length=self._config.min_reflection_length,
            timeout=timeout,
        )

        self._handlers = {
            Stage.ROUTE: self._route,
            Stage.REWRITE: self._rewrite,
            Stage.PLAN: self._plan,
            Stage.EXPAND: self._expand,
            Stage.RETRIEVE: self._retrieve,
            Stage.GRADE: self._grade,
            Stage.GENERATE: self._generate,
            Stage.REFLECT: self._reflect,
            Stage.CITE: self._cite,
        }

    # ── Entry points ─────────────────────────────────────────────────────────

    async def ask_stream(self, question: Question) -> AsyncGenerator[PipelineEvent, None]:
        """Answer ``question``, yielding PipelineEvents in chronological order.

        The stream always ends with exactly one ``done`` or ``error`` event,
        unless the caller stops iterating first.
        """
        state = _AskState(question=question, effective_query=question.text)

        try:
            state.conversation_id = await self._conversations.get_or_create(
                question.conversation_id, question.collection_id
            )
        except Exception:
            logger.exception("ask.conversation_failed", collection_id=question.collection_id)
            record_ask_outcome("error")
            yield events.error(CONVERSATION_ERROR)
            return

        try:
            state.history = await self._load_history(question)
            await self._conversations.append_message(
                state.conversation_id, "user", question.text
            )

            stage = Stage.ROUTE
            while True:
                result: StageResult | None = None
                async with aclosing(self._handlers[stage](state)) as handler:
                    async for item in handler:
                        if isinstance(item, PipelineEvent):
                            yield item
                        else:
                            result = item

                if isinstance(result, Advance):
                    logger.debug("ask.transition", source=stage.value, target=result.stage.value)
                    stage = result.stage
                    continue
                if result is None:
                    raise RuntimeError(f"Stage {stage.value} ended without a result")
                finish = result
                break

            message_id = await self._persist_answer(state, finish)
            self._audit(state, finish)
        except Exception:
            logger.exception(
                "ask.failed",
                conversation_id=state.conversation_id,
                query=question.text,
            )
            record_ask_outcome("error")
            yield events.error(GENERATION_ERROR)
            return

        record_ask_outcome(finish.outcome)
        yield events.done(
            DonePayload(
                answer=finish.answer,
                citations=finish.citations,
                conversation_id=state.conversation_id,
                message_id=message_id,
                intent=state.routing.intent if state.routing else None,
                decision=finish.decision,
            )
        )

    async def ask(self, question: Question) -> dict[str, Any]:
        """Answer ``question`` without streaming.

        Returns:
            The ``done`` payload.

        Raises:
            AskError: If the pipeline ended with an ``error`` event.
        """
        async with aclosing(self.ask_stream(question)) as stream:
            async for event in stream:
                if event.type == "done":
                    return event.payload
                if event.type == "error":
                    raise AskError(event.payload["message"])
        raise AskError("Pipeline ended without a terminal event")

    async def search(
        self, text: str, collection_id: str, limit: int | None = None
    ) -> list[RetrievedChunk]:
        """Single-query hybrid search with the configured default weights."""
        timeout = self._config.request_timeout
        embedding = await asyncio.wait_for(self._embedder.embed_text(text), timeout)
        return await asyncio.wait_for(
            self._search.hybrid_search(
                embedding=embedding,
                query_text=text,
                collection_id=collection_id,
                limit=limit or self._config.default_chunk_count,
                vector_weight=self._config.vector_weight,
                lexical_weight=self._config.lexical_weight,
            ),
            timeout,
        )

    # ── Stages ───────────────────────────────────────────────────────────────

    async def _route(self, state: _AskState) -> StageHandler:
        yield events.status("Analyzing query intent...")
        routing = await self._router.route(state.question.text, state.history)
        state.routing = routing
        yield events.routing(routing.intent, routing.confidence, routing.reasoning)

        if routing.skip_retrieval and routing.suggested_response:
            yield events.token(routing.suggested_response)
            yield Finish(answer=routing.suggested_response, outcome="shortcut")
            return
        yield Advance(Stage.REWRITE)

    async def _rewrite(self, state: _AskState) -> StageHandler:
        if state.history:
            yield events.status("Rewriting query with context...")
            rewrite = await self._rewriter.rewrite(state.question.text, state.history)
            if rewrite.changed:
                state.effective_query = rewrite.rewritten
                yield events.rewriting(
                    rewrite.original, rewrite.rewritten, rewrite.extracted_entities
                )
        yield Advance(Stage.PLAN)

    async def _plan(self, state: _AskState) -> StageHandler:
        params = plan_retrieval(
            state.routing.intent,
            len(state.effective_query),
            max_expansion_queries=self._config.max_expansion_queries,
        )
        state.params = params
        yield events.status(
            f"Adaptive retrieval: {params.chunk_count} chunks, "
            f"{params.expansion_queries} expansion queries"
        )
        yield Advance(Stage.EXPAND)

    async def _expand(self, state: _AskState) -> StageHandler:
        yield events.status("Generating search queries...")
        state.search_queries = await self._expander.expand(
            state.effective_query, state.params.expansion_queries
        )
        yield events.queries(state.search_queries)
        yield Advance(Stage.RETRIEVE)

    async def _retrieve(self, state: _AskState) -> StageHandler:
        yield events.status(f"Searching {len(state.search_queries)} queries...")
        state.retrieved = await self._retriever.retrieve(
            state.search_queries, state.question.collection_id, state.params
        )
        if not state.retrieved:
            yield Finish(answer=NO_SOURCES_RESPONSE, outcome="no_sources")
            return
        yield Advance(Stage.GRADE)

    async def _grade(self, state: _AskState) -> StageHandler:
        yield events.status("Grading chunk relevance...")
        crag = await self._grader.grade(state.effective_query, state.retrieved)
        state.crag = crag
        yield events.grading(
            crag.decision,
            round(crag.avg_relevance_score, 2),
            len(crag.relevant_chunks),
            len(state.retrieved),
        )

        if crag.decision == "no_relevant_sources":
            yield Finish(
                answer=NO_RELEVANT_SOURCES_RESPONSE,
                outcome="abstained",
                decision=crag.decision,
            )
            return

        state.context_chunks = crag.relevant_chunks or state.retrieved
        sources = events.sources(state.context_chunks)
        yield sources
        yield events.status(
            f"Using {len(state.context_chunks)} relevant chunks "
            f"from {len(sources.payload)} sources"
        )
        yield Advance(Stage.GENERATE)

    async def _generate(self, state: _AskState) -> StageHandler:
        if state.retry_count == 0:
            yield events.status("Generating answer...")

        result: GenerationResult | None = None
        async with aclosing(
            self._generator.generate(state.effective_query, state.context_chunks)
        ) as stream:
            async for item in stream:
                if isinstance(item, GenerationResult):
                    result = item
                else:
                    if item.type == "status":
                        logger.warning(
                            "ask.generation_fallback",
                            conversation_id=state.conversation_id,
                        )
                    yield item

        if result is None:
            raise RuntimeError("Answer generation produced no result")
        state.answer = result.answer
        state.model = result.model
        state.generation_attempts += result.attempts
        yield Advance(Stage.REFLECT)

    async def _reflect(self, state: _AskState) -> StageHandler:
        if state.retry_count == 0 and self._reflector.should_grade(state.answer):
            yield events.status("Verifying answer quality...")
            grade = await self._reflector.grade(
                state.effective_query, state.answer, state.context_chunks
            )
            if grade is not None:
                state.answer_grade = grade
                yield events.reflection(
                    grade.is_grounded,
                    grade.answers_question,
                    round(grade.completeness, 2),
                    round(grade.overall_score, 2),
                    grade.issues,
                )
                if grade.should_retry and state.retry_count < self._config.max_answer_retries:
                    yield events.status("Answer quality low, regenerating...")
                    state.retry_count += 1
                    yield Advance(Stage.GENERATE)
                    return
        yield Advance(Stage.CITE)

    async def _cite(self, state: _AskState) -> StageHandler:
        yield Finish(
            answer=state.answer,
            outcome="answered",
            citations=extract_citations(state.answer, state.context_chunks),
            decision=state.crag.decision if state.crag else None,
        )

    # ── Persistence and audit ────────────────────────────────────────────────

    async def _load_history(self, question: Question) -> list[ConversationMessage]:
        if question.history or not question.conversation_id:
            return list(question.history[-self._config.history_limit :])
        try:
            return await self._conversations.get_history(
                question.conversation_id, limit=self._config.history_limit
            )
        except Exception:
            logger.warning(
                "ask.history_unavailable",
                conversation_id=question.conversation_id,
                exc_info=True,
            )
            return []

    async def _persist_answer(self, state: _AskState, finish: Finish) -> str | None:
        try:
            return await self._conversations.append_message(
                state.conversation_id,
                "assistant",
                finish.answer,
                citations=finish.citations,
            )
        except Exception:
            logger.error(
                "ask.persist_failed",
                conversation_id=state.conversation_id,
                exc_info=True,
            )
            return None

    def _audit(self, state: _AskState, finish: Finish) -> None:
        logger.info(
            "ask.audit",
            conversation_id=state.conversation_id,
            collection_id=state.question.collection_id,
            query=state.question.text,
            effective_query=state.effective_query,
            intent=state.routing.intent if state.routing else None,
            outcome=finish.outcome,
            short_circuited=finish.outcome == "shortcut",
            chunks_retrieved=len(state.retrieved),
            chunks_used=len(state.context_chunks),
            crag_decision=state.crag.decision if state.crag else None,
            crag_avg_score=state.crag.avg_relevance_score if state.crag else None,
            retry_count=state.retry_count,
            generation_attempts=state.generation_attempts,
            model=state.model or None,
            citations=len(finish.citations),
        )


def create_ask_pipeline(
    settings: Any = None,
    config: KnowledgeBaseConfig | None = None,
) -> AskPipeline:
    """Wire an AskPipeline against LiteLLM, OpenAI embeddings and Qdrant."""
    from src.app.config import get_settings
    from src.app.services.llm import LLMService
    from src.knowledge.conversations.store import ConversationStore
    from src.knowledge.embeddings import EmbeddingService
    from src.knowledge.qdrant_client import QdrantKnowledgeStore

    settings = settings or get_settings()
    config = config or KnowledgeBaseConfig()

    embedder = EmbeddingService(config)
    store = QdrantKnowledgeStore(config)
    conversations = ConversationStore(
        store.client, embedder, collection_name=config.collection_conversations
    )
    return AskPipeline(
        llm=LLMService(settings),
        embedder=embedder,
        search_service=store,
        conversations=conversations,
        config=config,
        max_answer_tokens=settings.LLM_MAX_TOKENS,
    )
