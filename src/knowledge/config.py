"""Knowledge Base configuration via Pydantic BaseSettings.

All settings load from environment variables with the KNOWLEDGE_ prefix.
For example, KNOWLEDGE_QDRANT_PATH sets qdrant_path.
"""

from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class KnowledgeBaseConfig(BaseSettings):
    """Configuration for storage, embeddings, and the answering policy.

    Attributes:
        qdrant_path: Local filesystem path for Qdrant storage (dev mode).
        qdrant_url: Remote Qdrant server URL (production mode). If set, takes
            precedence over qdrant_path.
        qdrant_api_key: API key for remote Qdrant authentication.
        openai_api_key: API key for the OpenAI-compatible embedding endpoint.
        embedding_base_url: Optional base URL of that endpoint (e.g. OpenRouter).
        embedding_model: Embedding model name.
        embedding_dimensions: Dimensionality of dense embeddings.
        collection_chunks: Qdrant collection holding document chunks.
        collection_conversations: Qdrant collection holding conversation messages.
        history_limit: Number of prior messages used as conversation context.
        default_chunk_count: Chunk count when no retrieval plan applies.
        vector_weight: Default dense-similarity weight for hybrid search.
        lexical_weight: Default lexical (BM25) weight for hybrid search.
        max_expansion_queries: Ceiling on generated query variants.
        relevance_threshold: Minimum per-chunk relevance (0-1) to count as relevant.
        reflection_threshold: Overall answer score (0-1) below which to regenerate.
        max_answer_retries: Regenerations allowed after self-reflection.
        min_reflection_length: Answers shorter than this are not graded.
        request_timeout: Deadline in seconds for embedding and search calls.
    """

    model_config = SettingsConfigDict(
        env_prefix="KNOWLEDGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Qdrant connection
    qdrant_path: str = "./qdrant_data"
    qdrant_url: str | None = None
    qdrant_api_key: str | None = None

    # Embedding
    openai_api_key: str = ""
    embedding_base_url: str | None = None
    embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: int = 1536

    # Collections
    collection_chunks: str = "chunks"
    collection_conversations: str = "conversations"

    # Conversation context
    history_limit: int = 10

    # Retrieval defaults
    default_chunk_count: int = 8
    vector_weight: float = 0.7
    lexical_weight: float = 0.3
    max_expansion_queries: int = 4

    # Answering policy
    relevance_threshold: float = 0.5
    reflection_threshold: float = 0.6
    max_answer_retries: int = 1
    min_reflection_length: int = 50
    request_timeout: float = 10.0
