"""Agentic RAG pipeline for answering questions over a document collection.

Provides intent routing, context-aware rewriting, adaptive retrieval,
multi-query fusion, corrective relevance grading, streaming generation with
model fallback, self-reflective answer grading and citation extraction,
orchestrated as a state machine that streams PipelineEvents.

Components:
- IntentRouter: Pattern-first intent classification with an LLM fallback
- ContextRewriter: Resolves references in follow-up questions
- plan_retrieval: Maps intent and query length to retrieval parameters
- QueryExpander: Generates alternative search phrasings
- FusionRetriever: Multi-query hybrid search with score averaging
- RelevanceGrader: CRAG gate over retrieved chunks
- AnswerGenerator: Streaming grounded generation with model fallback
- AnswerReflector: Grades answers and requests one regeneration
- AskPipeline: Orchestrates route -> ... -> cite -> persist -> done
"""

from src.knowledge.rag.citations import extract_citations
from src.knowledge.rag.events import DonePayload, PipelineEvent
from src.knowledge.rag.expander import QueryExpander
from src.knowledge.rag.generator import AnswerGenerator, GenerationError, GenerationResult
from src.knowledge.rag.grader import CRAGResult, RelevanceGrader
from src.knowledge.rag.pipeline import AskError, AskPipeline, Stage, create_ask_pipeline
from src.knowledge.rag.planner import RetrievalParams, plan_retrieval
from src.knowledge.rag.reflector import AnswerGrade, AnswerReflector
from src.knowledge.rag.retriever import FusionRetriever, fuse_results
from src.knowledge.rag.rewriter import ContextRewriter, RewriteResult
from src.knowledge.rag.router import IntentRouter, QueryIntent, RouterResult

__all__ = [
    "AnswerGenerator",
    "AnswerGrade",
    "AnswerReflector",
    "AskError",
    "AskPipeline",
    "CRAGResult",
    "ContextRewriter",
    "DonePayload",
    "FusionRetriever",
    "GenerationError",
    "GenerationResult",
    "IntentRouter",
    "PipelineEvent",
    "QueryExpander",
    "QueryIntent",
    "RelevanceGrader",
    "RetrievalParams",
    "RewriteResult",
    "RouterResult",
    "Stage",
    "create_ask_pipeline",
    "extract_citations",
    "fuse_results",
    "plan_retrieval",
]
