"""
FastAPI Backend for the Consultation RAG

Thin HTTP surface over the RAG core: legal consultations, user document
processing, knowledge-base search/maintenance, quotas and tax-dispute
precedents. Users are identified by the X-User-Id header; Telegram
authentication happens upstream.

Run with: uvicorn execution.consult_rag.api:app --host 0.0.0.0 --port 8000
"""

import os
import time
import logging
from typing import Optional
from collections import defaultdict

from fastapi import FastAPI, HTTPException, UploadFile, File, Form, Depends, Header, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv

from .api_models import (
    ConsultationRequest, ConsultationResponse, SourceInfo,
    ProcessingResponse, QuotaResponse,
    SearchRequest, SearchResponse,
    KnowledgeUploadRequest, KnowledgeUploadResponse, IndexingResultInfo,
    TemplateInfo,
    PrecedentSearchBody, PrecedentInfo, EnhanceRequest, EnhanceResponse,
    HealthResponse,
)
from .config import RAGConfig
from .errors import (
    RAGError, EmbeddingError, VectorSearchError, LLMError, ValidationError, PersistenceError,
)
from .quotas import QuotaExceededError, UserNotFoundError

# Load environment variables
load_dotenv()
logger = logging.getLogger(__name__)

API_VERSION = "0.1.0"

app = FastAPI(
    title="Consultation RAG API",
    description="Legal consultations on Russian law backed by a retrieval-augmented knowledge base",
    version=API_VERSION,
)

# Configure CORS: use CORS_ORIGINS env var (comma-separated) or default to localhost
_cors_origins = os.getenv("CORS_ORIGINS", "http://localhost:5173,http://localhost:3000").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in _cors_origins],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# Error mapping
# =============================================================================

def status_for_error(error: RAGError) -> int:
    """HTTP status for a RAG core error."""
    if isinstance(error, QuotaExceededError):
        return 429
    if isinstance(error, UserNotFoundError):
        return 404
    if isinstance(error, ValidationError):
        return 400
    if isinstance(error, (EmbeddingError, VectorSearchError, LLMError)):
        return 502
    if isinstance(error, PersistenceError):
        return 500
    return 500


@app.exception_handler(RAGError)
async def rag_error_handler(request: Request, exc: RAGError):
    status = status_for_error(exc)
    if status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {type(exc).__name__}: {exc}")
    return JSONResponse(status_code=status, content=exc.to_dict())


# =============================================================================
# Rate Limiting
# =============================================================================

class RateLimiter:
    """Simple in-memory rate limiter using sliding window."""

    def __init__(self, max_requests: int = 60, window_seconds: int = 60):
        self._max_requests = max_requests
        self._window = window_seconds
        self._requests: dict[str, list[float]] = defaultdict(list)

    def is_allowed(self, key: str) -> bool:
        """Check if request is allowed for the given key."""
        now = time.time()
        window_start = now - self._window

        self._requests[key] = [t for t in self._requests[key] if t > window_start]

        if len(self._requests[key]) >= self._max_requests:
            return False

        self._requests[key].append(now)
        return True

    def reset(self):
        self._requests.clear()


_rate_limiter = RateLimiter(
    max_requests=int(os.getenv("RATE_LIMIT_RPM", "30")),
    window_seconds=60,
)


async def check_rate_limit(request: Request):
    """FastAPI dependency that enforces rate limiting per user."""
    key = request.headers.get("x-user-id") or (request.client.host if request.client else "anonymous")
    if not _rate_limiter.is_allowed(key):
        raise HTTPException(status_code=429, detail="Rate limit exceeded. Try again later.")


# =============================================================================
# Service Container - builds the RAG core once per process
# =============================================================================

class ServiceContainer:
    """Lazily wires config, database, stores and services."""

    def __init__(self):
        self._config: Optional[RAGConfig] = None
        self._database = None
        self._store = None
        self._knowledge = None
        self._rag_service = None
        self._precedents = None

    def get_config(self) -> RAGConfig:
        if self._config is None:
            self._config = RAGConfig.from_env()
        return self._config

    def get_database(self):
        if self._database is None:
            from .database import Database
            self._database = Database(self.get_config().database)
            self._database.connect()
        return self._database

    def get_store(self):
        if self._store is None:
            from .consultation_store import ConsultationStore
            self._store = ConsultationStore(self.get_database())
        return self._store

    def get_knowledge(self):
        if self._knowledge is None:
            from .embeddings import get_embedding_service
            from .knowledge import LegalKnowledgeService
            from .object_storage import ObjectStorage
            from .vector_store import VectorStore

            config = self.get_config()
            self._knowledge = LegalKnowledgeService(
                config,
                get_embedding_service(config.embedding),
                VectorStore(config.vector, self.get_database()),
                ObjectStorage(config.storage),
            )
        return self._knowledge

    def get_rag_service(self):
        if self._rag_service is None:
            from .llm import LLMClient
            from .quotas import get_quota_manager
            from .rag_service import RAGService

            config = self.get_config()
            store = self.get_store()
            self._rag_service = RAGService(
                config,
                self.get_knowledge(),
                LLMClient(config.llm),
                store,
                get_quota_manager(store),
            )
        return self._rag_service

    def get_precedent_finder(self):
        if self._precedents is None:
            from .precedents import PrecedentFinder
            self._precedents = PrecedentFinder(self.get_knowledge(), self.get_store())
        return self._precedents


_container = ServiceContainer()


# =============================================================================
# Identity dependencies
# =============================================================================

async def get_user_id(x_user_id: str = Header(...)) -> str:
    """User id forwarded by the bot/gateway."""
    user_id = x_user_id.strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="X-User-Id header is empty")
    return user_id


def _check_admin_key(x_admin_key: Optional[str]) -> None:
    expected = os.getenv("ADMIN_API_KEY")
    if not expected:
        raise HTTPException(status_code=403, detail="Administration is disabled")
    if x_admin_key != expected:
        raise HTTPException(status_code=403, detail="Invalid admin key")


async def require_admin(x_admin_key: Optional[str] = Header(None)) -> None:
    """Knowledge-base writes need the ADMIN_API_KEY shared secret."""
    _check_admin_key(x_admin_key)


def _check_dispute_owner(dispute_id: str, user_id: str) -> Optional[dict]:
    dispute = _container.get_store().get_tax_dispute(dispute_id)
    if dispute is not None and dispute.get("user_id") not in (None, user_id):
        raise HTTPException(status_code=404, detail="Tax dispute not found")
    return dispute


# =============================================================================
# Endpoints
# =============================================================================

@app.get("/api/v1/health", response_model=HealthResponse)
def health_check():
    """Health check endpoint."""
    try:
        _container.get_database()
        db_status = "connected"
    except Exception as e:
        logger.warning(f"Health check: database disconnected: {e}")
        db_status = "disconnected"

    return HealthResponse(status="ok", version=API_VERSION, database=db_status)


# ---- Knowledge base ---------------------------------------------------------

@app.post("/api/v1/knowledge-base/search", response_model=SearchResponse, dependencies=[Depends(check_rate_limit)])
def search_knowledge_base(request: SearchRequest, user_id: str = Depends(get_user_id)):
    """Semantic search with the relevance threshold applied."""
    from .vector_store import SearchFilters

    filters = SearchFilters(
        document_type=request.document_type,
        category=request.category,
        tags=request.tags,
        owner_id=user_id,
    )
    sources = _container.get_knowledge().search_legal_documents(
        request.query, filters=filters, limit=request.limit, threshold=request.threshold,
    )
    return SearchResponse(
        results=[SourceInfo(**s.to_dict()) for s in sources],
        total=len(sources),
    )


@app.get("/api/v1/knowledge-base/templates", response_model=list[TemplateInfo])
def list_templates(category: Optional[str] = None, user_id: str = Depends(get_user_id)):
    templates = _container.get_knowledge().get_document_templates(category)
    return [TemplateInfo(**t.to_dict()) for t in templates]


@app.post("/api/v1/knowledge-base/templates", response_model=TemplateInfo, dependencies=[Depends(require_admin)])
def save_template(template: TemplateInfo):
    from .knowledge import DocumentTemplate

    saved = DocumentTemplate.from_dict(template.model_dump())
    _container.get_knowledge().save_document_template(saved)
    return template


@app.post(
    "/api/v1/knowledge-base/upload",
    response_model=KnowledgeUploadResponse,
    dependencies=[Depends(require_admin)],
)
def upload_knowledge(request: KnowledgeUploadRequest):
    """Index legal documents; one document's failure does not abort the batch."""
    from .chunker import ChunkConfig
    from .knowledge import LegalDocument

    knowledge = _container.get_knowledge()
    chunk_config = None
    if request.chunk_size is not None or request.chunk_overlap is not None:
        chunk_config = ChunkConfig(
            chunk_size=request.chunk_size or knowledge.config.indexing.chunk_size,
            chunk_overlap=(
                knowledge.config.indexing.chunk_overlap
                if request.chunk_overlap is None else request.chunk_overlap
            ),
        )

    documents = [LegalDocument.from_dict(d.model_dump()) for d in request.documents]
    results = knowledge.upload_legal_documents(documents, chunk_config)
    indexed = sum(1 for r in results if r.ok)
    return KnowledgeUploadResponse(
        results=[IndexingResultInfo(**r.to_dict()) for r in results],
        indexed=indexed,
        failed=len(results) - indexed,
    )


@app.get("/api/v1/knowledge-base/stats")
def knowledge_stats(user_id: str = Depends(get_user_id)):
    return _container.get_knowledge().get_knowledge_base_stats()


# ---- Consultations ----------------------------------------------------------

@app.post("/api/v1/rag/consultations", response_model=ConsultationResponse, dependencies=[Depends(check_rate_limit)])
def create_consultation(request: ConsultationRequest, user_id: str = Depends(get_user_id)):
    """Answer a legal question, recording it against the user's quota."""
    from .rag_service import RAGQuery, PersistenceOptions

    result = _container.get_rag_service().query_with_persistence(
        RAGQuery(
            question=request.question,
            context=request.context,
            legal_area=request.legal_area,
            max_results=request.max_results,
            threshold=request.threshold,
        ),
        PersistenceOptions(
            save_to_database=request.save_to_database,
            track_usage=request.track_usage,
            user_id=user_id,
        ),
    )
    data = result.to_dict()
    data["sources"] = [SourceInfo(**s) for s in data["sources"]]
    return ConsultationResponse(**data)


@app.get("/api/v1/rag/consultations")
def list_consultations(limit: int = 10, offset: int = 0, user_id: str = Depends(get_user_id)):
    if not 1 <= limit <= 100 or offset < 0:
        raise ValidationError("limit must be in [1, 100] and offset >= 0")
    return _container.get_rag_service().get_user_consultations(user_id, limit=limit, offset=offset)


@app.post("/api/v1/rag/documents", response_model=ProcessingResponse, dependencies=[Depends(check_rate_limit)])
async def process_document(
    file: UploadFile = File(...),
    title: Optional[str] = Form(None),
    legal_area: Optional[str] = Form(None),
    document_type: Optional[str] = Form(None),
    tags: Optional[str] = Form(None),
    save_chunks: bool = Form(False),
    chunk_size: Optional[int] = Form(None),
    chunk_overlap: Optional[int] = Form(None),
    user_id: str = Depends(get_user_id),
):
    """Upload a text document for analysis (multipart)."""
    from starlette.concurrency import run_in_threadpool
    from .rag_service import DocumentUploadMetadata, ProcessingOptions

    content = await file.read()
    metadata = DocumentUploadMetadata(
        original_name=file.filename or "",
        mime_type=file.content_type or "application/octet-stream",
        title=title,
        legal_area=legal_area,
        document_type=document_type,
        tags=[t.strip() for t in (tags or "").split(",") if t.strip()],
    )
    options = ProcessingOptions(chunk_size=chunk_size, chunk_overlap=chunk_overlap, save_chunks=save_chunks)
    result = await run_in_threadpool(
        _container.get_rag_service().process_document_with_persistence,
        user_id, content, metadata, options,
    )
    return ProcessingResponse(**result.to_dict())


@app.get("/api/v1/rag/documents")
def list_processed_documents(limit: int = 10, offset: int = 0, user_id: str = Depends(get_user_id)):
    if not 1 <= limit <= 100 or offset < 0:
        raise ValidationError("limit must be in [1, 100] and offset >= 0")
    return _container.get_rag_service().get_user_processed_documents(user_id, limit=limit, offset=offset)


@app.get("/api/v1/rag/limits", response_model=QuotaResponse)
def check_limits(user_id: str = Depends(get_user_id)):
    return QuotaResponse(**_container.get_rag_service().check_user_limits(user_id).to_dict())


@app.get("/api/v1/rag/stats")
def get_stats(
    scope: str = "user",
    user_id: str = Depends(get_user_id),
    x_admin_key: Optional[str] = Header(None),
):
    service = _container.get_rag_service()
    if scope == "system":
        _check_admin_key(x_admin_key)
        return service.get_system_stats()
    if scope != "user":
        raise ValidationError(f"Unknown stats scope '{scope}'")
    return service.get_user_stats(user_id)


# ---- Tax disputes -----------------------------------------------------------

@app.post(
    "/api/v1/tax/disputes/{dispute_id}/precedents/search",
    response_model=list[PrecedentInfo],
    dependencies=[Depends(check_rate_limit)],
)
def search_precedents(dispute_id: str, request: PrecedentSearchBody, user_id: str = Depends(get_user_id)):
    from .precedents import PrecedentSearchRequest

    finder = _container.get_precedent_finder()
    if request.query:
        precedents = finder.find_relevant_precedents(PrecedentSearchRequest(
            query=request.query,
            tax_type=request.tax_type,
            document_type=request.document_type,
            limit=request.limit,
            min_relevance=request.min_relevance,
        ))
    else:
        _check_dispute_owner(dispute_id, user_id)
        precedents = finder.find_precedents_for_dispute(dispute_id, limit=request.limit)
    return [PrecedentInfo(**p.to_dict()) for p in precedents]


@app.post(
    "/api/v1/tax/disputes/{dispute_id}/precedents/enhance",
    response_model=EnhanceResponse,
    dependencies=[Depends(check_rate_limit)],
)
def enhance_dispute(dispute_id: str, request: EnhanceRequest, user_id: str = Depends(get_user_id)):
    """Merge precedents into a dispute analysis (stored analysis when none is sent)."""
    dispute = _check_dispute_owner(dispute_id, user_id)
    analysis = request.analysis
    if not analysis and dispute is not None:
        analysis = dispute.get("ai_analysis") or {}
    enhanced = _container.get_precedent_finder().enhance_analysis_with_precedents(dispute_id, analysis)
    return EnhanceResponse(**enhanced.to_dict())
