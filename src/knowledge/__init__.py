"""Knowledge Base module for collection-scoped retrieval and answering.

Provides Qdrant-backed hybrid search (dense + BM25 lexical) over document
chunks, conversation persistence, and Pydantic models for questions,
retrieved chunks and citations.
"""

from src.knowledge.config import KnowledgeBaseConfig
from src.knowledge.embeddings import EmbeddingService
from src.knowledge.models import (
    Citation,
    ConversationMessage,
    Question,
    RetrievedChunk,
)
from src.knowledge.qdrant_client import QdrantKnowledgeStore

__all__ = [
    "Citation",
    "ConversationMessage",
    "EmbeddingService",
    "KnowledgeBaseConfig",
    "Question",
    "QdrantKnowledgeStore",
    "RetrievedChunk",
]
