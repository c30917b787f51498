"""
Consultation RAG - Retrieval-Augmented Legal Consultations

This module provides the RAG core of a legal consultation service on
Russian law:
- Embedding of legal texts via hosted embedding APIs
- pgvector similarity search with document type / category / tag filters
- A legal knowledge base with resumable indexing and document templates
- Precedent lookup for tax disputes
- Consultation and document-processing pipelines with atomic usage quotas

The HTTP surface lives in api.py; Telegram authentication and payments
happen upstream.
"""

from .config import RAGConfig
from .errors import (
    RAGError,
    EmbeddingError,
    VectorSearchError,
    LLMError,
    ValidationError,
    PersistenceError,
)
from .chunker import TextChunker, ChunkConfig
from .embeddings import get_embedding_service
from .vector_store import VectorStore, SearchFilters
from .knowledge import LegalKnowledgeService, LegalDocument, DocumentTemplate
from .precedents import PrecedentFinder
from .quotas import QuotaManager, QuotaExceededError
from .rag_service import RAGService, RAGQuery, PersistenceOptions

__all__ = [
    "RAGConfig",
    "RAGError",
    "EmbeddingError",
    "VectorSearchError",
    "LLMError",
    "ValidationError",
    "PersistenceError",
    "TextChunker",
    "ChunkConfig",
    "get_embedding_service",
    "VectorStore",
    "SearchFilters",
    "LegalKnowledgeService",
    "LegalDocument",
    "DocumentTemplate",
    "PrecedentFinder",
    "QuotaManager",
    "QuotaExceededError",
    "RAGService",
    "RAGQuery",
    "PersistenceOptions",
]

__version__ = "0.1.0"
