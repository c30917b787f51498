"""
Configuration for the Consultation RAG core.

All settings are plain dataclasses. Components receive their own section
in the constructor; nothing below the entry points reads the environment.
Use RAGConfig.from_env() at process start (API module, CLI scripts).
"""

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional


@dataclass
class DatabaseConfig:
    """PostgreSQL connection settings."""
    connection_string: str = "postgresql://localhost:5432/consult_rag"
    pool_min_connections: int = 2
    pool_max_connections: int = 20
    use_pooling: bool = True


@dataclass
class EmbeddingConfig:
    """Configuration for embedding service."""
    provider: str = "openai"  # "openai", "voyage" or "cohere"
    model: str = "text-embedding-3-small"
    dimensions: int = 1536
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    batch_size: int = 100
    max_tokens_per_batch: int = 100000
    max_input_tokens: int = 8191
    chars_per_token: float = 3.0  # Cyrillic tokenizes denser than English
    timeout: float = 30.0
    cache_dir: Optional[str] = None
    use_cache: bool = True


@dataclass
class VectorStoreConfig:
    """Configuration for the pgvector store."""
    documents_table: str = "legal_documents"
    chunks_table: str = "document_chunks"
    embedding_dimensions: int = 1536
    search_timeout_ms: int = 5000
    hnsw_m: int = 16
    hnsw_ef_construction: int = 64


@dataclass
class LLMConfig:
    """Configuration for the chat completion provider (OpenAI-compatible)."""
    model: str = "gpt-4o-mini"
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    temperature: float = 0.2
    max_tokens: int = 2000
    timeout: float = 60.0
    cost_per_1k_tokens: float = 0.03


@dataclass
class RetrievalConfig:
    """Defaults for knowledge-base search."""
    relevance_threshold: float = 0.7
    max_results: int = 5
    max_question_length: int = 4000


@dataclass
class IndexingConfig:
    """Chunking and indexing defaults for document upload."""
    chunk_size: int = 1000
    chunk_overlap: int = 200
    batch_size: int = 16
    retry_partial: bool = True
    max_file_size: int = 50 * 1024 * 1024
    supported_mime_prefixes: tuple = ("text/",)


@dataclass
class StorageConfig:
    """Object storage settings (key-addressed blobs under a root directory)."""
    root_dir: str = "document_files"
    documents_prefix: str = "legal-documents"
    templates_prefix: str = "document-templates"
    uploads_prefix: str = "documents"


@dataclass
class RAGConfig:
    """Top-level configuration passed into every component factory."""
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    vector: VectorStoreConfig = field(default_factory=VectorStoreConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    indexing: IndexingConfig = field(default_factory=IndexingConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "RAGConfig":
        """
        Build configuration from environment variables.

        Args:
            env: Mapping to read from. Defaults to os.environ.

        Returns:
            RAGConfig with defaults for anything not set
        """
        env = os.environ if env is None else env
        config = cls()

        config.database.connection_string = (
            env.get("POSTGRES_URL")
            or env.get("DATABASE_URL")
            or config.database.connection_string
        )

        provider = env.get("EMBEDDING_PROVIDER", config.embedding.provider)
        config.embedding.provider = provider
        if provider == "voyage":
            config.embedding.model = "voyage-multilingual-2"
            config.embedding.dimensions = 1024
            config.embedding.api_key = env.get("VOYAGE_API_KEY")
        elif provider == "cohere":
            config.embedding.model = "embed-multilingual-v3.0"
            config.embedding.dimensions = 1024
            config.embedding.api_key = env.get("COHERE_API_KEY")
        else:
            config.embedding.api_key = env.get("OPENAI_API_KEY")
            config.embedding.base_url = env.get("OPENAI_BASE_URL")
        config.embedding.model = env.get("EMBEDDING_MODEL", config.embedding.model)
        config.embedding.dimensions = _int(env, "EMBEDDING_DIMENSIONS", config.embedding.dimensions)
        config.embedding.cache_dir = env.get("EMBEDDING_CACHE_DIR")
        config.vector.embedding_dimensions = config.embedding.dimensions

        config.llm.model = env.get("LLM_MODEL", config.llm.model)
        config.llm.api_key = env.get("LLM_API_KEY") or env.get("OPENAI_API_KEY")
        config.llm.base_url = env.get("LLM_BASE_URL")
        config.llm.timeout = _float(env, "LLM_TIMEOUT", config.llm.timeout)

        config.retrieval.relevance_threshold = _float(
            env, "RAG_RELEVANCE_THRESHOLD", config.retrieval.relevance_threshold
        )
        config.retrieval.max_results = _int(env, "RAG_MAX_RESULTS", config.retrieval.max_results)

        config.indexing.chunk_size = _int(env, "RAG_CHUNK_SIZE", config.indexing.chunk_size)
        config.indexing.chunk_overlap = _int(env, "RAG_CHUNK_OVERLAP", config.indexing.chunk_overlap)

        config.storage.root_dir = env.get("DOCUMENT_STORAGE_DIR", config.storage.root_dir)
        return config


def _int(env: Mapping[str, str], key: str, default: int) -> int:
    value = env.get(key)
    return int(value) if value not in (None, "") else default


def _float(env: Mapping[str, str], key: str, default: float) -> float:
    value = env.get(key)
    return float(value) if value not in (None, "") else default
