"""
Error taxonomy for the Consultation RAG core.

Provider-layer errors (embedding, vector search, LLM) are never retried
here; they carry the provider message so callers can diagnose failures.
QuotaExceededError lives in quotas.py next to the quota logic.
"""

from typing import Optional


class RAGError(Exception):
    """Base class for every error raised by the RAG core."""

    def __init__(
        self,
        message: str,
        *,
        provider: Optional[str] = None,
        original: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.original = original

    @property
    def provider_message(self) -> Optional[str]:
        """Message of the wrapped provider exception, if any."""
        return str(self.original) if self.original is not None else None

    def to_dict(self) -> dict:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "provider": self.provider,
            "provider_message": self.provider_message,
        }


class EmbeddingError(RAGError):
    """Embedding API failed, timed out, or the input exceeds the token limit."""


class VectorSearchError(RAGError):
    """Vector database unavailable or the similarity query failed."""


class LLMError(RAGError):
    """Chat completion provider failed or timed out."""


class ValidationError(RAGError):
    """Malformed input shape (empty question, bad chunk settings, ...)."""


class PersistenceError(RAGError):
    """Database write or transaction failure."""
