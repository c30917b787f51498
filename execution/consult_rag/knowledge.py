"""
Legal Knowledge Service

Owns the legal knowledge base: document upload and indexing, semantic
search with a relevance threshold, document templates and stats.

Indexing pipeline per document:
    metadata JSON -> object storage
    document row  -> vector store (content hash, cursor reset on change)
    chunk         -> embed in batches -> insert + advance cursor

A batch failure leaves earlier batches in place and marks the document
partial; upload_legal_documents() gives every partial document one retry
pass that resumes at the cursor.
"""

import hashlib
import logging
from dataclasses import dataclass, field
from typing import Optional

from .chunker import Chunk, ChunkConfig, TextChunker
from .config import RAGConfig
from .errors import RAGError, ValidationError
from .object_storage import ObjectStorage
from .vector_store import SearchFilters, SearchResult, VectorStore

logger = logging.getLogger(__name__)

DOCUMENT_TYPES = ("law", "precedent", "template", "guideline")


@dataclass
class LegalDocument:
    """A legal document in the knowledge base."""
    id: str
    title: str
    type: str  # law | precedent | template | guideline
    content: str
    category: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    url: Optional[str] = None
    metadata: dict = field(default_factory=dict)

    def validate(self) -> None:
        if not self.id or not str(self.id).strip():
            raise ValidationError("Document id is required")
        if not self.title or not self.title.strip():
            raise ValidationError(f"Document {self.id}: title is required")
        if self.type not in DOCUMENT_TYPES:
            raise ValidationError(
                f"Document {self.id}: type must be one of {', '.join(DOCUMENT_TYPES)}, got '{self.type}'"
            )
        if not self.content or not self.content.strip():
            raise ValidationError(f"Document {self.id}: content is empty")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "type": self.type,
            "category": self.category,
            "content": self.content,
            "tags": self.tags,
            "url": self.url,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LegalDocument":
        return cls(
            id=data["id"],
            title=data["title"],
            type=data["type"],
            content=data.get("content") or data.get("source_text", ""),
            category=data.get("category"),
            tags=list(data.get("tags") or []),
            url=data.get("url"),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class DocumentTemplate:
    """A fill-in document template (claim, lawsuit, contract, ...)."""
    id: str
    name: str
    type: str  # claim | lawsuit | contract | complaint | petition
    category: str
    template: str
    variables: list[dict] = field(default_factory=list)
    description: str = ""
    examples: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "category": self.category,
            "template": self.template,
            "variables": self.variables,
            "description": self.description,
            "examples": self.examples,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DocumentTemplate":
        return cls(
            id=data["id"],
            name=data["name"],
            type=data["type"],
            category=data.get("category", "general"),
            template=data.get("template", ""),
            variables=list(data.get("variables") or []),
            description=data.get("description", ""),
            examples=list(data.get("examples") or []),
        )


@dataclass
class LegalSource:
    """A retrieved chunk, as consumed by the orchestrator and precedent finder."""
    id: str
    document_id: str
    title: str
    content: str
    type: str
    relevance: float
    category: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    url: Optional[str] = None
    metadata: dict = field(default_factory=dict)

    @classmethod
    def from_search_result(cls, result: SearchResult) -> "LegalSource":
        return cls(
            id=result.chunk_id,
            document_id=result.document_id,
            title=result.title,
            content=result.content,
            type=result.document_type or "guideline",
            relevance=result.score,
            category=result.category,
            tags=list(result.tags),
            url=result.url,
            metadata=dict(result.metadata or {}),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "document_id": self.document_id,
            "title": self.title,
            "content": self.content,
            "type": self.type,
            "relevance": self.relevance,
            "category": self.category,
            "tags": self.tags,
            "url": self.url,
        }


@dataclass
class IndexingResult:
    """Outcome of indexing one document."""
    document_id: str
    status: str  # indexed | unchanged | partial | error
    chunks_indexed: int = 0
    total_chunks: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status in ("indexed", "unchanged")

    def to_dict(self) -> dict:
        return {
            "document_id": self.document_id,
            "status": self.status,
            "chunks_indexed": self.chunks_indexed,
            "total_chunks": self.total_chunks,
            "error": self.error,
        }


def content_hash(text: str, chunk_config: ChunkConfig) -> str:
    """Hash of content plus chunk geometry; either changing forces a re-index."""
    payload = f"{chunk_config.chunk_size}:{chunk_config.chunk_overlap}:{text}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class LegalKnowledgeService:
    """
    Search and maintenance of the legal knowledge base.

    Usage:
        service = LegalKnowledgeService(config, embeddings, vector_store, storage)
        sources = service.search_legal_documents("срок возврата товара", SearchFilters(category="consumer-rights"))
    """

    def __init__(
        self,
        config: RAGConfig,
        embeddings,
        vector_store: VectorStore,
        storage: ObjectStorage,
    ):
        self.config = config
        self.embeddings = embeddings
        self.vector_store = vector_store
        self.storage = storage

    def initialize(self) -> None:
        """Create the vector schema (tables, pgvector extension)."""
        self.vector_store.initialize_schema()
        logger.info("Knowledge base initialized")

    # =========================================================================
    # Search
    # =========================================================================

    def search_legal_documents(
        self,
        query: str,
        filters: Optional[SearchFilters] = None,
        limit: Optional[int] = None,
        threshold: Optional[float] = None,
    ) -> list[LegalSource]:
        """
        Semantic search over the knowledge base.

        Args:
            query: Natural-language query
            filters: Optional document_type / category / tags filter
            limit: Hits requested from the vector store (default max_results)
            threshold: Minimum score kept (default relevance_threshold)

        Returns:
            Sources with relevance >= threshold, descending by relevance

        Raises:
            ValidationError: Empty query or bad limit/threshold
            EmbeddingError / VectorSearchError: Provider failures
        """
        if not query or not query.strip():
            raise ValidationError("Search query is empty")

        limit = self.config.retrieval.max_results if limit is None else limit
        threshold = self.config.retrieval.relevance_threshold if threshold is None else threshold
        if limit <= 0:
            raise ValidationError(f"limit must be positive, got {limit}")
        if not 0.0 <= threshold <= 1.0:
            raise ValidationError(f"threshold must be in [0, 1], got {threshold}")

        embedding = self.embeddings.embed_query(query)
        results = self.vector_store.search(embedding, filters=filters, limit=limit)

        kept = [r for r in results if r.score >= threshold]
        kept.sort(key=lambda r: -r.score)

        logger.info(
            f"Knowledge search: {len(results)} hits, {len(kept)} above threshold {threshold}"
        )
        return [LegalSource.from_search_result(r) for r in kept]

    # =========================================================================
    # Templates
    # =========================================================================

    def _template_key(self, template: DocumentTemplate) -> str:
        return f"{self.config.storage.templates_prefix}/{template.type}/{template.id}.json"

    def save_document_template(self, template: DocumentTemplate) -> str:
        """Store a template. Returns the storage key."""
        if not template.id or not template.type:
            raise ValidationError("Template id and type are required")
        key = self.storage.put_json(self._template_key(template), template.to_dict())
        logger.info(f"Saved template {template.id} ({template.type})")
        return key

    def _template_keys(self) -> list[str]:
        return [
            k for k in self.storage.list_keys(self.config.storage.templates_prefix + "/")
            if k.endswith(".json")
        ]

    def get_document_templates(self, category: Optional[str] = None) -> list[DocumentTemplate]:
        """All stored templates, optionally filtered by category. Unreadable entries are skipped."""
        templates = []
        for key in self._template_keys():
            try:
                data = self.storage.get_json(key)
                if data is None:
                    continue
                template = DocumentTemplate.from_dict(data)
            except (ValueError, KeyError) as e:
                logger.warning(f"Skipping unreadable template {key}: {e}")
                continue
            if category is None or template.category == category:
                templates.append(template)
        return templates

    # =========================================================================
    # Indexing
    # =========================================================================

    def _document_key(self, doc: LegalDocument) -> str:
        return f"{self.config.storage.documents_prefix}/{doc.type}/{doc.id}.json"

    def _chunk_config(self, chunk_config: Optional[ChunkConfig]) -> ChunkConfig:
        if chunk_config is not None:
            return chunk_config
        return ChunkConfig(
            chunk_size=self.config.indexing.chunk_size,
            chunk_overlap=self.config.indexing.chunk_overlap,
        )

    def index_document(self, doc: LegalDocument, chunk_config: Optional[ChunkConfig] = None) -> IndexingResult:
        """
        Store and index a single document, resuming from its cursor.

        Raises:
            ValidationError: Malformed document or chunk settings
            RAGError: Storage or database failure before chunk indexing starts
        """
        doc.validate()
        chunk_config = self._chunk_config(chunk_config)
        chunker = TextChunker(chunk_config)

        self.storage.put_json(self._document_key(doc), doc.to_dict())

        state = self.vector_store.upsert_document(
            document_id=doc.id,
            title=doc.title,
            document_type=doc.type,
            content_hash=content_hash(doc.content, chunk_config),
            category=doc.category,
            tags=doc.tags,
            url=doc.url,
            metadata=doc.metadata,
        )
        chunks = chunker.chunk(doc.id, doc.content)
        total = len(chunks)
        cursor = int(state.get("indexed_chunks") or 0)

        if not state.get("content_changed") and cursor >= total and state.get("index_status") == "indexed":
            logger.info(f"Document {doc.id} unchanged, {total} chunks already indexed")
            return IndexingResult(doc.id, "unchanged", chunks_indexed=total, total_chunks=total)

        self.vector_store.set_index_status(doc.id, "indexing", total_chunks=total)
        return self._index_from_cursor(doc.id, chunks, cursor)

    def _index_from_cursor(self, document_id: str, chunks: list[Chunk], cursor: int) -> IndexingResult:
        total = len(chunks)
        batch_size = self.config.indexing.batch_size
        indexed = min(cursor, total)

        if indexed:
            logger.info(f"Resuming {document_id} at chunk {indexed}/{total}")

        for start in range(indexed, total, batch_size):
            window = chunks[start:start + batch_size]
            # Whitespace-only tail windows carry nothing searchable; skip them but move the cursor on
            batch = [c for c in window if c.content.strip()]
            try:
                vectors = self.embeddings.embed_documents([c.content for c in batch]) if batch else []
                self.vector_store.insert_chunks(
                    document_id,
                    [c.to_dict() for c in batch],
                    vectors,
                    cursor_after=start + len(window),
                )
            except RAGError as e:
                logger.warning(
                    f"Indexing {document_id} stopped at chunk {indexed}/{total}: {e}"
                )
                self.vector_store.set_index_status(document_id, "partial", total_chunks=total, error=str(e))
                return IndexingResult(document_id, "partial", indexed, total, error=str(e))
            indexed = start + len(window)

        self.vector_store.set_index_status(document_id, "indexed", total_chunks=total)
        logger.info(f"Indexed {document_id}: {total} chunks")
        return IndexingResult(document_id, "indexed", indexed, total)

    def _resume(self, doc: LegalDocument, chunk_config: ChunkConfig) -> IndexingResult:
        state = self.vector_store.get_indexing_state(doc.id) or {}
        chunks = TextChunker(chunk_config).chunk(doc.id, doc.content)
        return self._index_from_cursor(doc.id, chunks, int(state.get("indexed_chunks") or 0))

    def upload_legal_documents(
        self,
        documents: list[LegalDocument],
        chunk_config: Optional[ChunkConfig] = None,
    ) -> list[IndexingResult]:
        """
        Store and index a batch of documents.

        One document's failure never aborts the others. Partial documents
        get one retry pass; any still failing end as "error".

        Returns:
            One IndexingResult per input document, in input order
        """
        chunk_config = self._chunk_config(chunk_config)
        chunk_config.validate()

        results = []
        for doc in documents:
            try:
                results.append(self.index_document(doc, chunk_config))
            except RAGError as e:
                logger.error(f"Failed to index document {getattr(doc, 'id', '?')}: {e}")
                results.append(IndexingResult(getattr(doc, "id", ""), "error", error=str(e)))

        if self.config.indexing.retry_partial:
            for i, (doc, result) in enumerate(zip(documents, results)):
                if result.status != "partial":
                    continue
                logger.info(f"Retrying partial document {doc.id} from chunk {result.chunks_indexed}")
                try:
                    retried = self._resume(doc, chunk_config)
                except RAGError as e:
                    retried = IndexingResult(doc.id, "partial", result.chunks_indexed, result.total_chunks, error=str(e))
                if retried.status == "partial":
                    self.vector_store.set_index_status(doc.id, "error", error=retried.error)
                    retried = IndexingResult(
                        doc.id, "error", retried.chunks_indexed, retried.total_chunks, error=retried.error
                    )
                results[i] = retried

        indexed = sum(1 for r in results if r.ok)
        logger.info(f"Upload finished: {indexed}/{len(results)} documents indexed")
        return results

    def delete_legal_document(self, doc: LegalDocument) -> bool:
        """Remove a document from the index and object storage."""
        self.storage.delete(self._document_key(doc))
        return self.vector_store.delete_document(doc.id)

    # =========================================================================
    # Stats
    # =========================================================================

    def get_knowledge_base_stats(self) -> dict:
        stats = self.vector_store.get_stats()
        stats["total_templates"] = len(self._template_keys())
        return stats
