"""
Embedding Service for the Consultation RAG

Turns text into fixed-dimension vectors via a hosted embedding API.
Default provider is OpenAI text-embedding-3-small (1536 dims), which
handles Russian legal text well; Voyage AI and Cohere are alternatives.

Architecture:
    BaseEmbeddingService  -- shared validation, caching, batching, embed / embed_documents
        OpenAIEmbeddingService   -- OpenAI (or compatible) /v1/embeddings
        VoyageEmbeddingService   -- Voyage AI
        EmbeddingService         -- Cohere embed-v3

Embedding is a pure function of (model, input_type, text), so results are
cached in memory and optionally on disk. Provider failures are wrapped in
EmbeddingError and never retried here.
"""

import json
import hashlib
import logging
from typing import Optional
from pathlib import Path

from .config import EmbeddingConfig
from .errors import EmbeddingError, ValidationError

logger = logging.getLogger(__name__)


class BaseEmbeddingService:
    """
    Base class for API-based embedding services.

    Subclasses implement:
    - _init_client(): create the provider SDK client (self._client)
    - _call_provider(texts, input_type): return one vector per text

    And set these class attributes:
    - _provider_name: Human-readable provider name for error messages
    - _doc_input_type / _query_input_type: provider input type strings
    """

    _provider_name: str = "Base"
    _doc_input_type: str = "document"
    _query_input_type: str = "query"

    def __init__(self, config: Optional[EmbeddingConfig] = None):
        """
        Initialize embedding service.

        Args:
            config: Optional configuration. Uses defaults if not provided.
        """
        self.config = config or EmbeddingConfig()
        self._client = None
        self._cache = {}

        if self.config.cache_dir:
            self._cache_path = Path(self.config.cache_dir)
            self._cache_path.mkdir(parents=True, exist_ok=True)
        else:
            self._cache_path = None

        self._init_client()

    def _init_client(self):
        """Initialize the provider-specific API client. Must be overridden by subclasses."""
        raise NotImplementedError("Subclasses must implement _init_client()")

    def _call_provider(self, texts: list[str], input_type: str) -> list[list[float]]:
        """Call the provider API. Must be overridden by subclasses."""
        raise NotImplementedError("Subclasses must implement _call_provider()")

    def estimate_tokens(self, text: str) -> int:
        """Rough token estimate used for limit checks and batching."""
        return int(len(text) / self.config.chars_per_token) + 1

    def _validate_text(self, text: str) -> None:
        if not isinstance(text, str) or not text.strip():
            raise ValidationError("Cannot embed empty text")

        est_tokens = self.estimate_tokens(text)
        if est_tokens > self.config.max_input_tokens:
            raise EmbeddingError(
                f"Text too long for {self.config.model}: ~{est_tokens} tokens "
                f"(limit {self.config.max_input_tokens})",
                provider=self._provider_name,
            )

    def _create_batches(self, texts: list[str]) -> list[list[str]]:
        """Split texts into batches respecting both item count and token limits."""
        batches = []
        current_batch = []
        current_tokens = 0

        for text in texts:
            est_tokens = self.estimate_tokens(text)
            if current_batch and (
                len(current_batch) >= self.config.batch_size
                or current_tokens + est_tokens > self.config.max_tokens_per_batch
            ):
                batches.append(current_batch)
                current_batch = []
                current_tokens = 0
            current_batch.append(text)
            current_tokens += est_tokens

        if current_batch:
            batches.append(current_batch)

        return batches

    def embed(self, text: str) -> list[float]:
        """
        Generate the embedding for a single text (query side).

        Args:
            text: Text to embed

        Returns:
            Embedding vector of config.dimensions floats

        Raises:
            ValidationError: If text is empty
            EmbeddingError: On provider failure or text over the token limit
        """
        self._validate_text(text)
        return self._embed_batch([text], input_type=self._query_input_type)[0]

    def embed_query(self, query: str) -> list[float]:
        """Alias of embed() for search queries."""
        return self.embed(query)

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        """
        Generate embeddings for document chunks.

        Args:
            texts: List of text strings to embed

        Returns:
            List of embedding vectors, in input order
        """
        if not texts:
            return []

        for text in texts:
            self._validate_text(text)

        batches = self._create_batches(texts)
        logger.info(
            f"Embedding {len(texts)} documents in {len(batches)} batches"
            f" with {self._provider_name}"
        )

        embeddings = []
        for batch_idx, batch in enumerate(batches):
            embeddings.extend(self._embed_batch(batch, input_type=self._doc_input_type))
            if (batch_idx + 1) % 10 == 0:
                logger.info(f"Processed batch {batch_idx + 1}/{len(batches)}")

        return embeddings

    def _embed_batch(self, texts: list[str], input_type: str) -> list[list[float]]:
        """Embed a batch of texts, serving what we can from cache."""
        results = []
        uncached_texts = []
        uncached_indices = []

        for i, text in enumerate(texts):
            cached = self._get_cached(self._get_cache_key(text, input_type))
            if cached is not None:
                results.append((i, cached))
            else:
                uncached_texts.append(text)
                uncached_indices.append(i)

        if uncached_texts:
            if not self._client:
                raise EmbeddingError(
                    f"{self._provider_name} client not initialized. Check the API key.",
                    provider=self._provider_name,
                )
            try:
                vectors = self._call_provider(uncached_texts, input_type)
            except EmbeddingError:
                raise
            except Exception as e:
                logger.error(f"{self._provider_name} embedding failed: {e}")
                raise EmbeddingError(
                    f"{self._provider_name} embedding failed: {e}",
                    provider=self._provider_name,
                    original=e,
                ) from e

            if len(vectors) != len(uncached_texts):
                raise EmbeddingError(
                    f"{self._provider_name} returned {len(vectors)} embeddings "
                    f"for {len(uncached_texts)} inputs",
                    provider=self._provider_name,
                )

            for idx, embedding in zip(uncached_indices, vectors):
                embedding = list(embedding)
                if len(embedding) != self.config.dimensions:
                    raise EmbeddingError(
                        f"Expected {self.config.dimensions}-dim embedding, "
                        f"got {len(embedding)}",
                        provider=self._provider_name,
                    )
                self._set_cached(self._get_cache_key(texts[idx], input_type), embedding)
                results.append((idx, embedding))

        results.sort(key=lambda x: x[0])
        return [emb for _, emb in results]

    def _get_cache_key(self, text: str, input_type: str) -> str:
        """Generate cache key for text."""
        content = f"{self.config.model}:{input_type}:{text}"
        return hashlib.sha256(content.encode()).hexdigest()[:32]

    def _get_cached(self, key: str) -> Optional[list[float]]:
        """Get cached embedding."""
        if not self.config.use_cache:
            return None

        if key in self._cache:
            return self._cache[key]

        if self._cache_path:
            cache_file = self._cache_path / f"{key}.json"
            if cache_file.exists():
                try:
                    with open(cache_file) as f:
                        embedding = json.load(f)
                    self._cache[key] = embedding
                    return embedding
                except (OSError, ValueError) as e:
                    logger.debug(f"Failed to read embedding cache file {cache_file}: {e}")

        return None

    def _set_cached(self, key: str, embedding: list[float]) -> None:
        """Cache an embedding."""
        if not self.config.use_cache:
            return

        self._cache[key] = embedding

        if self._cache_path:
            cache_file = self._cache_path / f"{key}.json"
            try:
                with open(cache_file, "w") as f:
                    json.dump(embedding, f)
            except OSError as e:
                logger.warning(f"Failed to cache embedding: {e}")

    def clear_cache(self) -> None:
        """Drop the in-memory cache."""
        self._cache.clear()

    @property
    def dimensions(self) -> int:
        """Return embedding dimensions."""
        return self.config.dimensions


class OpenAIEmbeddingService(BaseEmbeddingService):
    """
    Embeddings via the OpenAI SDK (text-embedding-3-small by default).

    Works against any OpenAI-compatible endpoint through config.base_url.
    The SDK's own retries are disabled; the timeout surfaces as EmbeddingError.
    """

    _provider_name = "OpenAI"
    _doc_input_type = "document"
    _query_input_type = "query"

    def _init_client(self):
        if not self.config.api_key:
            logger.warning("Embedding API key not configured. Embeddings will fail.")
            return

        from openai import OpenAI
        self._client = OpenAI(
            api_key=self.config.api_key,
            base_url=self.config.base_url,
            timeout=self.config.timeout,
            max_retries=0,
        )
        logger.info(f"OpenAI embedding client initialized with model {self.config.model}")

    def _call_provider(self, texts: list[str], input_type: str) -> list[list[float]]:
        kwargs = {"model": self.config.model, "input": texts}
        if self.config.model.startswith("text-embedding-3"):
            kwargs["dimensions"] = self.config.dimensions
        response = self._client.embeddings.create(**kwargs)
        data = sorted(response.data, key=lambda item: item.index)
        return [item.embedding for item in data]


class VoyageEmbeddingService(BaseEmbeddingService):
    """Embedding service using Voyage AI (voyage-multilingual-2 for Russian text)."""

    _provider_name = "Voyage AI"
    _doc_input_type = "document"
    _query_input_type = "query"

    def _init_client(self):
        if not self.config.api_key:
            logger.warning("VOYAGE_API_KEY not configured. Embeddings will fail.")
            return

        try:
            import voyageai
            self._client = voyageai.Client(
                api_key=self.config.api_key,
                timeout=self.config.timeout,
                max_retries=0,
            )
            logger.info(f"Voyage AI client initialized with model {self.config.model}")
        except ImportError:
            logger.error("voyageai package not installed. Run: pip install voyageai")
            raise

    def _call_provider(self, texts: list[str], input_type: str) -> list[list[float]]:
        response = self._client.embed(
            texts=texts,
            model=self.config.model,
            input_type=input_type,
        )
        return response.embeddings


class EmbeddingService(BaseEmbeddingService):
    """Generates embeddings using Cohere's multilingual embed-v3 model."""

    _provider_name = "Cohere"
    _doc_input_type = "search_document"
    _query_input_type = "search_query"

    def _init_client(self):
        if not self.config.api_key:
            logger.warning("COHERE_API_KEY not configured. Embeddings will fail.")
            return

        try:
            import cohere
            self._client = cohere.Client(self.config.api_key, timeout=self.config.timeout)
            logger.info(f"Cohere client initialized with model {self.config.model}")
        except ImportError:
            logger.error("Cohere package not installed. Run: pip install cohere")
            raise

    def _call_provider(self, texts: list[str], input_type: str) -> list[list[float]]:
        response = self._client.embed(
            texts=texts,
            model=self.config.model,
            input_type=input_type,
        )
        return response.embeddings


_PROVIDERS = {
    "openai": OpenAIEmbeddingService,
    "voyage": VoyageEmbeddingService,
    "cohere": EmbeddingService,
}


def get_embedding_service(config: Optional[EmbeddingConfig] = None) -> BaseEmbeddingService:
    """
    Factory function to get the configured embedding service.

    Args:
        config: Embedding configuration; config.provider selects the class

    Returns:
        Configured embedding service
    """
    config = config or EmbeddingConfig()
    service_cls = _PROVIDERS.get(config.provider)
    if service_cls is None:
        raise ValidationError(
            f"Unknown embedding provider '{config.provider}'. "
            f"Expected one of: {', '.join(sorted(_PROVIDERS))}"
        )
    return service_cls(config)


# CLI for testing
if __name__ == "__main__":
    import sys
    from dotenv import load_dotenv
    from .config import RAGConfig

    load_dotenv()
    logging.basicConfig(level=logging.INFO)

    service = get_embedding_service(RAGConfig.from_env().embedding)
    query = " ".join(sys.argv[1:]) or "Как оспорить начисление налога на имущество?"

    print(f"Query: {query}")
    embedding = service.embed(query)
    print(f"Embedding dimensions: {len(embedding)}")
    print(f"First 10 values: {embedding[:10]}")
