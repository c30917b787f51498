"""
RAG Orchestrator for legal consultations.

One consultation runs strictly in order:

    VALIDATE -> QUOTA_CHECK -> (REJECTED | CONTEXT_RETRIEVAL -> LLM_CALL -> PERSIST -> DONE)

QUOTA_CHECK is a read that fails fast. The real guard is the conditional
usage increment inside the PERSIST transaction: a user who lost a race
for the last unit gets QuotaExceededError and nothing is written. Any
other failure during PERSIST comes after the LLM has answered, so the
answer is still returned with recorded=False and the failure is logged
as a reconciliation candidate.
"""

import re
import math
import time
import uuid
import hashlib
import logging
from pathlib import PurePosixPath
from dataclasses import dataclass, field
from typing import Optional

from .chunker import ChunkConfig, TextChunker
from .citation import CitationExtractor
from .config import RAGConfig
from .consultation_store import ConsultationRecord, ProcessedDocumentRecord, RAGQueryRecord
from .errors import PersistenceError, RAGError, ValidationError
from .knowledge import DOCUMENT_TYPES, LegalDocument, LegalKnowledgeService, LegalSource
from .llm import LLMClient
from .metrics import MetricsCollector, get_metrics_collector
from .object_storage import ObjectStorage
from .prompts import build_context, build_system_prompt, build_user_prompt
from .quotas import QuotaExceededError, QuotaManager, UserQuota
from .vector_store import SearchFilters

logger = logging.getLogger(__name__)

NO_SOURCES_CONFIDENCE = 0.1
MAX_CONFIDENCE = 0.95
FULL_CONFIDENCE_SOURCES = 5
CHARS_PER_TOKEN_ESTIMATE = 4

BASE_ACTIONS = (
    "Собрать все документы по делу",
    "Составить письменную претензию",
    "Обратиться к юристу за консультацией",
)
COURT_ACTIONS = ("Подготовить исковое заявление", "Обратиться в суд")
CLAIM_ACTIONS = ("Направить претензию заказным письмом", "Дождаться ответа в течение 10 дней")

_UNSAFE_NAME_CHARS = re.compile(r"[\x00-\x1f/\\]")


# =============================================================================
# Request / response types
# =============================================================================


@dataclass
class RAGQuery:
    """A consultation question."""
    question: str
    context: Optional[str] = None
    legal_area: Optional[str] = None
    max_results: Optional[int] = None
    threshold: Optional[float] = None


@dataclass
class PersistenceOptions:
    save_to_database: bool = True
    track_usage: bool = True
    user_id: Optional[str] = None


@dataclass
class RAGResult:
    """Answer with its sources and persistence outcome."""
    answer: str
    sources: list[LegalSource]
    confidence: float
    legal_references: list[str] = field(default_factory=list)
    suggested_actions: list[str] = field(default_factory=list)
    consultation_id: Optional[str] = None
    query_id: Optional[str] = None
    recorded: bool = False
    tokens_used: int = 0
    cost_usd: float = 0.0
    response_time_ms: int = 0

    def to_dict(self) -> dict:
        return {
            "answer": self.answer,
            "sources": [s.to_dict() for s in self.sources],
            "confidence": self.confidence,
            "legal_references": self.legal_references,
            "suggested_actions": self.suggested_actions,
            "consultation_id": self.consultation_id,
            "query_id": self.query_id,
            "recorded": self.recorded,
            "tokens_used": self.tokens_used,
            "cost_usd": self.cost_usd,
            "response_time_ms": self.response_time_ms,
        }


@dataclass
class DocumentUploadMetadata:
    original_name: str
    mime_type: str
    title: Optional[str] = None
    legal_area: Optional[str] = None
    document_type: Optional[str] = None
    tags: list[str] = field(default_factory=list)


@dataclass
class ProcessingOptions:
    chunk_size: Optional[int] = None
    chunk_overlap: Optional[int] = None
    save_chunks: bool = False
    track_usage: bool = True


@dataclass
class ProcessingResult:
    document_id: str
    chunks_count: int
    processing_time_ms: int
    status: str  # completed | error
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "document_id": self.document_id,
            "chunks_count": self.chunks_count,
            "processing_time_ms": self.processing_time_ms,
            "status": self.status,
            "error": self.error,
        }


# =============================================================================
# Scoring helpers
# =============================================================================


def calculate_confidence(sources: list[LegalSource]) -> float:
    """Mean relevance, damped when fewer than five sources back the answer."""
    if not sources:
        return NO_SOURCES_CONFIDENCE
    mean = sum(s.relevance for s in sources) / len(sources)
    coverage = min(len(sources) / FULL_CONFIDENCE_SOURCES, 1.0)
    return min(mean * coverage, MAX_CONFIDENCE)


def suggest_actions(answer: str) -> list[str]:
    actions = list(BASE_ACTIONS)
    lowered = (answer or "").lower()
    if "суд" in lowered:
        actions.extend(COURT_ACTIONS)
    if "претензи" in lowered:
        actions.extend(CLAIM_ACTIONS)
    return actions


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text or "") / CHARS_PER_TOKEN_ESTIMATE)


def _question_hash(question: str) -> str:
    return hashlib.sha256(question.encode("utf-8")).hexdigest()[:16]


# =============================================================================
# Orchestrator
# =============================================================================


class RAGService:
    """
    Consultation and document-processing pipelines with persistence.

    Usage:
        service = RAGService(config, knowledge, llm, store, quota_manager)
        result = service.query_with_persistence(
            RAGQuery(question="Можно ли вернуть товар без чека?", legal_area="consumer-rights"),
            PersistenceOptions(user_id="42"),
        )
    """

    def __init__(
        self,
        config: RAGConfig,
        knowledge: LegalKnowledgeService,
        llm: LLMClient,
        store,
        quota_manager: QuotaManager,
        metrics: Optional[MetricsCollector] = None,
        storage: Optional[ObjectStorage] = None,
        citations: Optional[CitationExtractor] = None,
    ):
        self.config = config
        self.knowledge = knowledge
        self.llm = llm
        self.store = store
        self.quota_manager = quota_manager
        self.metrics = metrics or get_metrics_collector()
        self.storage = storage or knowledge.storage
        self.citations = citations or CitationExtractor()

    # =========================================================================
    # Consultations
    # =========================================================================

    def _validate_query(self, query: RAGQuery, options: PersistenceOptions) -> None:
        question = query.question or ""
        if not question.strip():
            raise ValidationError("Question is empty")
        max_length = self.config.retrieval.max_question_length
        if len(question) > max_length:
            raise ValidationError(f"Question is too long ({len(question)} > {max_length} characters)")
        if (options.save_to_database or options.track_usage) and not options.user_id:
            raise ValidationError("user_id is required to save or track a consultation")
        if query.max_results is not None and query.max_results <= 0:
            raise ValidationError(f"max_results must be positive, got {query.max_results}")
        if query.threshold is not None and not 0.0 <= query.threshold <= 1.0:
            raise ValidationError(f"threshold must be in [0, 1], got {query.threshold}")

    def query_with_persistence(
        self,
        query: RAGQuery,
        options: Optional[PersistenceOptions] = None,
    ) -> RAGResult:
        """
        Answer a legal question and record it.

        Args:
            query: Question plus optional context, legal area and search limits
            options: Persistence flags and the user the consultation belongs to

        Returns:
            RAGResult; recorded is False when the answer could not be saved

        Raises:
            ValidationError: Malformed question or missing user_id
            QuotaExceededError: No quota left (before retrieval or at PERSIST)
            EmbeddingError / VectorSearchError / LLMError: Provider failures
        """
        options = options or PersistenceOptions()
        self._validate_query(query, options)

        with self.metrics.track_consultation(options.user_id, query.question) as tracker:
            start_time = time.time()

            if options.user_id:
                self.quota_manager.ensure_can_use(options.user_id)

            max_results = query.max_results or self.config.retrieval.max_results
            threshold = (
                self.config.retrieval.relevance_threshold
                if query.threshold is None else query.threshold
            )
            filters = SearchFilters(category=query.legal_area, owner_id=options.user_id)
            sources = self.knowledge.search_legal_documents(
                query.question,
                filters=filters,
                limit=max_results,
                threshold=threshold,
            )
            if not sources:
                logger.info("No sources above threshold; answering without context")

            system_prompt = build_system_prompt(query.legal_area)
            user_prompt = build_user_prompt(query.question, build_context(sources, query.context))
            completion = self.llm.complete(system_prompt, user_prompt)
            answer = completion.content

            confidence = calculate_confidence(sources)
            tokens_used = completion.total_tokens
            if tokens_used is None:
                tokens_used = estimate_tokens(system_prompt + user_prompt + answer)
            cost_usd = round(tokens_used / 1000 * self.config.llm.cost_per_1k_tokens, 6)
            response_time_ms = int((time.time() - start_time) * 1000)

            result = RAGResult(
                answer=answer,
                sources=sources,
                confidence=confidence,
                legal_references=self.citations.extract_legal_references(answer, sources),
                suggested_actions=suggest_actions(answer),
                tokens_used=tokens_used,
                cost_usd=cost_usd,
                response_time_ms=response_time_ms,
            )

            if options.save_to_database:
                self._persist_consultation(query, options, result, completion.model, max_results, threshold)
            elif options.track_usage:
                self._consume_standalone(options.user_id, result)

            tracker.set_result(len(sources), confidence)

        logger.info(
            f"Consultation for user {options.user_id}: {len(sources)} sources, "
            f"confidence {confidence:.2f}, recorded={result.recorded}, {response_time_ms}ms"
        )
        return result

    def _persist_consultation(
        self,
        query: RAGQuery,
        options: PersistenceOptions,
        result: RAGResult,
        model: Optional[str],
        max_results: int,
        threshold: float,
    ) -> None:
        source_dicts = [s.to_dict() for s in result.sources]
        consultation = ConsultationRecord(
            user_id=options.user_id,
            question=query.question,
            answer=result.answer,
            legal_area=query.legal_area,
            confidence=result.confidence,
            sources=source_dicts,
            tokens_used=result.tokens_used,
            cost_usd=result.cost_usd,
            response_time_ms=result.response_time_ms,
            model=model,
        )
        rag_query = RAGQueryRecord(
            user_id=options.user_id,
            query=query.question,
            legal_area=query.legal_area,
            max_results=max_results,
            threshold=threshold,
            results=source_dicts,
        )
        try:
            consultation_id, query_id = self.store.save_consultation(
                consultation, rag_query, consume_quota=options.track_usage
            )
        except PersistenceError as e:
            self._log_unrecorded(options.user_id, query.question, result.answer, e)
            return

        result.consultation_id = consultation_id
        result.query_id = query_id
        result.recorded = True

    def _consume_standalone(self, user_id: str, result: RAGResult) -> None:
        try:
            consumed = self.quota_manager.try_consume_quota(user_id)
        except PersistenceError as e:
            self._log_unrecorded(user_id, "", result.answer, e)
            return
        if not consumed:
            quota = self.quota_manager.check_user_limits(user_id)
            raise QuotaExceededError(
                f"Document limit reached ({quota.documents_limit} documents)",
                quota_type="documents",
                current=quota.documents_used,
                limit=quota.documents_limit,
            )
        result.recorded = True

    def _log_unrecorded(self, user_id: str, question: str, answer: str, error: Exception) -> None:
        self.metrics.record_persistence_failure()
        logger.error(
            f"RECONCILE consultation not recorded: user={user_id} "
            f"question_hash={_question_hash(question)} answer_chars={len(answer)} error={error}"
        )

    # =========================================================================
    # Document processing
    # =========================================================================

    def _chunk_config(self, options: ProcessingOptions) -> ChunkConfig:
        config = ChunkConfig(
            chunk_size=options.chunk_size or self.config.indexing.chunk_size,
            chunk_overlap=(
                self.config.indexing.chunk_overlap
                if options.chunk_overlap is None else options.chunk_overlap
            ),
        )
        config.validate()
        return config

    def _validate_upload(self, user_id: str, file_bytes: bytes, metadata: DocumentUploadMetadata) -> str:
        if not user_id:
            raise ValidationError("user_id is required to process a document")
        if not file_bytes:
            raise ValidationError("Uploaded file is empty")
        if len(file_bytes) > self.config.indexing.max_file_size:
            raise ValidationError(
                f"File too large ({len(file_bytes)} bytes, max {self.config.indexing.max_file_size})"
            )
        mime_type = (metadata.mime_type or "").lower()
        if not mime_type.startswith(tuple(self.config.indexing.supported_mime_prefixes)):
            raise ValidationError(f"Unsupported file type: {metadata.mime_type}")

        name = PurePosixPath((metadata.original_name or "").replace("\\", "/")).name
        name = _UNSAFE_NAME_CHARS.sub("_", name).strip()
        if not name or name in (".", ".."):
            raise ValidationError("original_name is required")
        return name

    def process_document_with_persistence(
        self,
        user_id: str,
        file_bytes: bytes,
        metadata: DocumentUploadMetadata,
        options: Optional[ProcessingOptions] = None,
    ) -> ProcessingResult:
        """
        Store, chunk and index a user's document, tracking it as a ProcessedDocument.

        The row is created as pending and moves once, to completed or error.
        Provider failures during indexing produce status "error" rather than
        an exception; the quota unit is only consumed on completion.

        Raises:
            ValidationError: Bad input, unsupported type, unknown user
            QuotaExceededError: No quota left
            PersistenceError: The row could not be created or completed
        """
        options = options or ProcessingOptions()
        original_name = self._validate_upload(user_id, file_bytes, metadata)
        chunk_config = self._chunk_config(options)

        if options.track_usage:
            self.quota_manager.ensure_can_use(user_id)

        start_time = time.time()
        document_id = str(uuid.uuid4())
        storage_key = f"{self.config.storage.uploads_prefix}/{user_id}/{document_id}/{original_name}"

        self.store.create_processed_document(
            ProcessedDocumentRecord(
                user_id=str(user_id),
                original_name=original_name,
                storage_key=storage_key,
                file_size=len(file_bytes),
                mime_type=metadata.mime_type,
                legal_area=metadata.legal_area,
                document_type=metadata.document_type,
            ),
            document_id=document_id,
        )
        logger.info(f"Processing document {document_id} ({original_name}, {len(file_bytes)} bytes) for user {user_id}")

        doc = None
        try:
            self.storage.put_bytes(storage_key, file_bytes)
            try:
                text = file_bytes.decode("utf-8")
            except UnicodeDecodeError as e:
                raise ValidationError(f"File is not valid UTF-8 text: {e}") from e

            doc = LegalDocument(
                id=f"user-{document_id}",
                title=metadata.title or original_name,
                type=metadata.document_type if metadata.document_type in DOCUMENT_TYPES else "guideline",
                content=text,
                category=metadata.legal_area,
                tags=list(metadata.tags),
                metadata={
                    "user_id": str(user_id),
                    "processed_document_id": document_id,
                    "original_name": original_name,
                    "storage_key": storage_key,
                    "file_size": len(file_bytes),
                    "mime_type": metadata.mime_type,
                },
            )
            indexing = self.knowledge.index_document(doc, chunk_config)
            if not indexing.ok:
                raise RAGError(indexing.error or f"Indexing ended with status {indexing.status}")
        except RAGError as e:
            self._discard_index(doc)
            return self._fail_document(document_id, start_time, e)

        chunks = None
        if options.save_chunks:
            chunks = [c.to_dict() for c in TextChunker(chunk_config).chunk(doc.id, text)]

        try:
            self.store.complete_processed_document(
                document_id,
                indexing.total_chunks,
                chunks=chunks,
                consume_quota_for=str(user_id) if options.track_usage else None,
            )
        except RAGError as e:
            self._discard_index(doc)
            self._mark_failed(document_id, "Document limit reached" if isinstance(e, QuotaExceededError) else str(e))
            self.metrics.record_error(type(e).__name__)
            raise

        processing_time_ms = int((time.time() - start_time) * 1000)
        self.metrics.record_document(indexing.total_chunks, processing_time_ms)
        logger.info(f"Document {document_id} completed: {indexing.total_chunks} chunks in {processing_time_ms}ms")
        return ProcessingResult(
            document_id=document_id,
            chunks_count=indexing.total_chunks,
            processing_time_ms=processing_time_ms,
            status="completed",
        )

    def _fail_document(self, document_id: str, start_time: float, error: RAGError) -> ProcessingResult:
        logger.error(f"Document {document_id} failed: {error}")
        self._mark_failed(document_id, str(error))
        processing_time_ms = int((time.time() - start_time) * 1000)
        self.metrics.record_document(0, processing_time_ms, success=False)
        self.metrics.record_error(type(error).__name__)
        return ProcessingResult(
            document_id=document_id,
            chunks_count=0,
            processing_time_ms=processing_time_ms,
            status="error",
            error=str(error),
        )

    def _mark_failed(self, document_id: str, message: str) -> None:
        try:
            self.store.fail_processed_document(document_id, message)
        except RAGError as e:
            logger.error(f"RECONCILE processed document {document_id} left pending: {e}")

    def _discard_index(self, doc: Optional[LegalDocument]) -> None:
        """Drop a failed upload's chunks so it never shows up in search."""
        if doc is None:
            return
        try:
            self.knowledge.delete_legal_document(doc)
        except RAGError as e:
            logger.error(f"Could not remove chunks of failed upload {doc.id}: {e}")

    # =========================================================================
    # Quota and stats
    # =========================================================================

    def check_user_limits(self, user_id: str) -> UserQuota:
        """Pure read of the user's quota."""
        return self.quota_manager.check_user_limits(user_id)

    def try_consume_quota(self, user_id: str) -> bool:
        return self.quota_manager.try_consume_quota(user_id)

    def get_user_stats(self, user_id: str) -> dict:
        stats = self.store.get_user_stats(user_id)
        quota = self.quota_manager.check_user_limits(user_id)
        stats["can_use_document"] = quota.can_use_document
        stats["remaining"] = quota.remaining
        stats["is_premium"] = quota.is_premium
        return stats

    def get_system_stats(self) -> dict:
        stats = self.store.get_system_stats()
        stats["knowledge_base"] = self.knowledge.get_knowledge_base_stats()
        stats["metrics"] = self.metrics.get_metrics_dict()
        return stats

    def get_user_consultations(self, user_id: str, limit: int = 10, offset: int = 0) -> list[dict]:
        return self.store.get_user_consultations(user_id, limit=limit, offset=offset)

    def get_user_processed_documents(self, user_id: str, limit: int = 10, offset: int = 0) -> list[dict]:
        return self.store.get_user_processed_documents(user_id, limit=limit, offset=offset)
