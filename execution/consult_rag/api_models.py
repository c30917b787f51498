"""
Pydantic models for the Consultation RAG FastAPI backend.

Length and emptiness of questions are checked by the service layer so
that they surface as 400 ValidationError like every other input problem.
"""

from typing import Optional
from pydantic import BaseModel, Field


class SourceInfo(BaseModel):
    """A knowledge-base chunk backing an answer."""
    id: str
    document_id: str
    title: str
    content: str
    type: str
    relevance: float
    category: Optional[str] = None
    tags: list[str] = []
    url: Optional[str] = None


# =========================================================================
# Consultations
# =========================================================================

class ConsultationRequest(BaseModel):
    """Request body for a legal consultation."""
    question: str
    context: Optional[str] = None
    legal_area: Optional[str] = None
    max_results: Optional[int] = Field(default=None, ge=1, le=50)
    threshold: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    save_to_database: bool = True
    track_usage: bool = True


class ConsultationResponse(BaseModel):
    """Response body for a legal consultation."""
    answer: str
    sources: list[SourceInfo]
    confidence: float
    legal_references: list[str]
    suggested_actions: list[str]
    consultation_id: Optional[str] = None
    query_id: Optional[str] = None
    recorded: bool
    tokens_used: int = 0
    cost_usd: float = 0.0
    response_time_ms: int = 0


class ProcessingResponse(BaseModel):
    """Response body for a processed user document."""
    document_id: str
    chunks_count: int
    processing_time_ms: int
    status: str
    error: Optional[str] = None


class QuotaResponse(BaseModel):
    user_id: str
    can_use_document: bool
    documents_used: int
    documents_limit: int
    remaining: Optional[int] = None
    is_premium: bool
    subscription_plan: str


# =========================================================================
# Knowledge base
# =========================================================================

class SearchRequest(BaseModel):
    """Request body for knowledge-base search."""
    query: str
    document_type: Optional[str] = None
    category: Optional[str] = None
    tags: list[str] = []
    limit: Optional[int] = Field(default=None, ge=1, le=50)
    threshold: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class SearchResponse(BaseModel):
    results: list[SourceInfo]
    total: int


class LegalDocumentIn(BaseModel):
    """A legal document submitted for indexing."""
    id: str
    title: str
    type: str = Field(..., pattern=r"^(law|precedent|template|guideline)$")
    content: str
    category: Optional[str] = None
    tags: list[str] = []
    url: Optional[str] = None
    metadata: dict = {}


class KnowledgeUploadRequest(BaseModel):
    documents: list[LegalDocumentIn] = Field(..., min_length=1)
    chunk_size: Optional[int] = None
    chunk_overlap: Optional[int] = None


class IndexingResultInfo(BaseModel):
    document_id: str
    status: str
    chunks_indexed: int
    total_chunks: int
    error: Optional[str] = None


class KnowledgeUploadResponse(BaseModel):
    results: list[IndexingResultInfo]
    indexed: int
    failed: int


class TemplateInfo(BaseModel):
    """A document template (claim, lawsuit, contract, ...)."""
    id: str
    name: str
    type: str
    category: str
    template: str
    variables: list[dict] = []
    description: str = ""
    examples: list[str] = []


# =========================================================================
# Tax disputes
# =========================================================================

class PrecedentSearchBody(BaseModel):
    """Precedent search; without a query the dispute's own terms are used."""
    query: Optional[str] = None
    tax_type: Optional[str] = None
    document_type: str = Field(default="precedent", pattern=r"^(law|precedent|template|guideline)$")
    limit: int = Field(default=10, ge=1, le=50)
    min_relevance: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class CourtDecisionInfo(BaseModel):
    court: str
    case_number: str
    date: str
    outcome: str


class PrecedentInfo(BaseModel):
    id: str
    chunk_id: str
    title: str
    content: str
    type: str
    category: str
    relevance_score: float
    legal_basis: list[str]
    applicable_arguments: list[str]
    court_decision: Optional[CourtDecisionInfo] = None
    url: Optional[str] = None


class EnhanceRequest(BaseModel):
    analysis: dict = {}


class EnhanceResponse(BaseModel):
    analysis: dict
    precedents: list[PrecedentInfo]
    enhanced_arguments: list[str]
    citations_added: int


class HealthResponse(BaseModel):
    """Response body for health check."""
    status: str
    version: str
    database: str
