"""
Precedent Finder for tax disputes.

Specialises the knowledge-base search for case law: filters by document
type and tax-type tag, extracts legal basis and argument sentences from
each hit, and merges new precedents into an existing dispute analysis
without overwriting what is already there.
"""

import copy
import logging
from dataclasses import dataclass, field
from typing import Optional

from .citation import CitationExtractor
from .errors import ValidationError
from .knowledge import LegalKnowledgeService, LegalSource
from .vector_store import SearchFilters

logger = logging.getLogger(__name__)

ENHANCE_MIN_RELEVANCE = 0.75
LEGAL_ARTICLE_MIN_RELEVANCE = 0.8
MAX_DOCUMENT_CITATIONS = 3


@dataclass
class PrecedentSearchRequest:
    query: str
    tax_type: Optional[str] = None
    document_type: str = "precedent"
    limit: int = 10
    min_relevance: Optional[float] = None  # None -> knowledge-service default


@dataclass
class CourtDecision:
    court: str
    case_number: str
    date: str
    outcome: str  # favorable | unfavorable | partial

    @classmethod
    def from_metadata(cls, metadata: dict) -> Optional["CourtDecision"]:
        data = (metadata or {}).get("court_decision")
        if not data:
            return None
        try:
            return cls(
                court=data["court"],
                case_number=data["case_number"],
                date=data["date"],
                outcome=data.get("outcome", "favorable"),
            )
        except KeyError:
            return None

    def to_dict(self) -> dict:
        return {
            "court": self.court,
            "case_number": self.case_number,
            "date": self.date,
            "outcome": self.outcome,
        }


@dataclass
class Precedent:
    """A precedent (or law) document found for a dispute."""
    id: str  # document id
    chunk_id: str
    title: str
    content: str
    type: str
    category: str
    relevance_score: float
    legal_basis: list[str] = field(default_factory=list)
    applicable_arguments: list[str] = field(default_factory=list)
    court_decision: Optional[CourtDecision] = None
    url: Optional[str] = None

    def summary(self) -> dict:
        """Compact form stored inside a dispute analysis."""
        return {
            "id": self.id,
            "title": self.title,
            "type": self.type,
            "relevance_score": self.relevance_score,
            "legal_basis": self.legal_basis,
            "url": self.url,
        }

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "chunk_id": self.chunk_id,
            "title": self.title,
            "content": self.content,
            "type": self.type,
            "category": self.category,
            "relevance_score": self.relevance_score,
            "legal_basis": self.legal_basis,
            "applicable_arguments": self.applicable_arguments,
            "court_decision": self.court_decision.to_dict() if self.court_decision else None,
            "url": self.url,
        }


@dataclass
class EnhancedAnalysis:
    analysis: dict
    precedents: list[Precedent]
    enhanced_arguments: list[str]
    citations_added: int

    def to_dict(self) -> dict:
        return {
            "analysis": self.analysis,
            "precedents": [p.to_dict() for p in self.precedents],
            "enhanced_arguments": self.enhanced_arguments,
            "citations_added": self.citations_added,
        }


def _as_list(value) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [value]
    return [str(v.get("text") or "") if isinstance(v, dict) else str(v) for v in value if v]


def _items(value) -> list:
    """Existing entries as a list, each kept exactly as stored."""
    if not value:
        return []
    if isinstance(value, (str, dict)):
        return [value]
    return list(value)


class PrecedentFinder:
    """
    Case-law lookup on top of LegalKnowledgeService.

    Args:
        knowledge: Knowledge service used for all searches
        store: ConsultationStore for reading/writing tax disputes (optional)
        citations: CitationExtractor (defaults to a new one)
    """

    def __init__(self, knowledge: LegalKnowledgeService, store=None, citations: Optional[CitationExtractor] = None):
        self.knowledge = knowledge
        self.store = store
        self.citations = citations or CitationExtractor()

    def _to_precedent(self, source: LegalSource) -> Precedent:
        return Precedent(
            id=source.document_id,
            chunk_id=source.id,
            title=source.title or "Документ без названия",
            content=source.content,
            type=source.type,
            category=source.category or "general",
            relevance_score=source.relevance,
            legal_basis=self.citations.extract_legal_basis(source.content),
            applicable_arguments=self.citations.extract_arguments(source.content),
            court_decision=CourtDecision.from_metadata(source.metadata),
            url=source.url,
        )

    def find_relevant_precedents(self, request: PrecedentSearchRequest) -> list[Precedent]:
        """
        Search precedents of one document type, optionally tagged by tax type.

        Several chunks of one document collapse into its best-scoring chunk.

        Returns:
            Precedents sorted by relevance, descending
        """
        if not request.query or not request.query.strip():
            raise ValidationError("Precedent search query is empty")

        filters = SearchFilters(
            document_type=request.document_type,
            tags=[request.tax_type] if request.tax_type else [],
        )
        sources = self.knowledge.search_legal_documents(
            request.query,
            filters=filters,
            limit=request.limit,
            threshold=request.min_relevance,
        )

        best = {}
        for source in sources:
            current = best.get(source.document_id)
            if current is None or source.relevance > current.relevance:
                best[source.document_id] = source

        precedents = [self._to_precedent(s) for s in best.values()]
        precedents.sort(key=lambda p: -p.relevance_score)
        logger.info(f"Found {len(precedents)} {request.document_type} documents for tax type {request.tax_type}")
        return precedents[: request.limit]

    def find_precedents_by_issue(self, issue: str, tax_type: str, limit: int = 5) -> list[Precedent]:
        """Precedents for a legal issue; relevance floor is the knowledge-service default."""
        return self.find_relevant_precedents(PrecedentSearchRequest(
            query=issue,
            tax_type=tax_type,
            document_type="precedent",
            limit=limit,
        ))

    def find_relevant_legal_articles(self, issue: str, tax_type: str, limit: int = 3) -> list[Precedent]:
        """Tax Code articles relevant to an issue (law documents, 0.8 floor)."""
        return self.find_relevant_precedents(PrecedentSearchRequest(
            query=f"{issue} {tax_type} НК РФ статья налоговый кодекс",
            tax_type=tax_type,
            document_type="law",
            limit=limit,
            min_relevance=LEGAL_ARTICLE_MIN_RELEVANCE,
        ))

    def generate_citations_for_document(self, precedents: list[Precedent]) -> list[str]:
        """Citation sentences for a generated document (at most 3)."""
        citations = []
        for precedent in precedents:
            argument = precedent.applicable_arguments[0] if precedent.applicable_arguments else None
            decision = precedent.court_decision
            if precedent.type == "precedent" and decision:
                if decision.outcome in ("favorable", "partial"):
                    citations.append(self.citations.format_court_citation(
                        decision.court, decision.case_number, decision.date, argument
                    ))
            elif precedent.type == "law" and precedent.legal_basis:
                citations.append(self.citations.format_law_citation(precedent.legal_basis[0], argument))

            if len(citations) >= MAX_DOCUMENT_CITATIONS:
                break
        return citations

    def _build_enhance_query(self, analysis: dict, dispute: Optional[dict]) -> tuple[str, Optional[str]]:
        tax_type = (dispute or {}).get("tax_type") or analysis.get("tax_type")
        parts = []
        if dispute:
            grounds = ". ".join(_as_list(dispute.get("grounds")))
            parts.append(f"{tax_type or ''} налог {dispute.get('period') or ''}. {grounds}.".strip())
        elif tax_type:
            parts.append(f"{tax_type} налог.")
        if analysis.get("summary"):
            parts.append(str(analysis["summary"]))
        parts.extend(_as_list(analysis.get("grounds")))
        parts.extend(_as_list(analysis.get("arguments"))[:3])
        if not any(p.strip(" .") for p in parts):
            return "", tax_type
        parts.append("Оспаривание начисления, ошибки в расчетах, судебная практика.")
        return " ".join(p for p in parts if p), tax_type

    def find_precedents_for_dispute(self, dispute_id: str, limit: int = 5) -> list[Precedent]:
        """Precedents for a stored dispute, queried by its tax type, period and grounds."""
        dispute = self.store.get_tax_dispute(dispute_id) if self.store else None
        if dispute is None:
            raise ValidationError(f"Tax dispute {dispute_id} not found")
        analysis = dispute.get("ai_analysis") or {}
        query, tax_type = self._build_enhance_query(analysis if isinstance(analysis, dict) else {}, dispute)
        if not query:
            raise ValidationError(f"Tax dispute {dispute_id} has no terms to search precedents with")
        return self.find_relevant_precedents(PrecedentSearchRequest(query=query, tax_type=tax_type, limit=limit))

    def enhance_analysis_with_precedents(self, dispute_id: str, existing_analysis: Optional[dict]) -> EnhancedAnalysis:
        """
        Find precedents for a dispute and merge them into its analysis.

        The merge is additive: precedents already present (by id) are
        skipped, new citations and arguments are appended, and no existing
        key is overwritten. When the dispute exists the merged analysis is
        saved together with a "precedents_found" timeline event.
        """
        analysis = copy.deepcopy(existing_analysis or {})
        dispute = self.store.get_tax_dispute(dispute_id) if self.store else None

        query, tax_type = self._build_enhance_query(analysis, dispute)
        if not query:
            raise ValidationError("Analysis has no terms to search precedents with")

        found = self.find_relevant_precedents(PrecedentSearchRequest(
            query=query,
            tax_type=tax_type,
            limit=5,
            min_relevance=ENHANCE_MIN_RELEVANCE,
        ))

        existing_precedents = list(analysis.get("precedents") or [])
        known_ids = {p.get("id") for p in existing_precedents if isinstance(p, dict)}
        new_precedents = [p for p in found if p.id not in known_ids]

        existing_citations = _items(analysis.get("citations"))
        seen_citations = {str(c) for c in existing_citations}
        new_citations = [
            c for c in self.generate_citations_for_document(new_precedents)
            if c not in seen_citations
        ]

        existing_arguments = _items(analysis.get("arguments"))
        seen_arguments = {str(a) for a in existing_arguments}
        enhanced_arguments = []
        for precedent in new_precedents:
            for argument in precedent.applicable_arguments:
                if argument not in seen_arguments and argument not in enhanced_arguments:
                    enhanced_arguments.append(argument)

        analysis["precedents"] = existing_precedents + [p.summary() for p in new_precedents]
        analysis["citations"] = existing_citations + new_citations
        analysis["arguments"] = existing_arguments + enhanced_arguments

        if dispute is not None and self.store is not None:
            avg_relevance = (
                sum(p.relevance_score for p in new_precedents) / len(new_precedents)
                if new_precedents else 0.0
            )
            self.store.save_dispute_analysis(
                dispute_id,
                analysis,
                event_type="precedents_found",
                description=f"Найдено {len(new_precedents)} релевантных прецедентов и документов",
                metadata={
                    "precedents_count": len(new_precedents),
                    "avg_relevance": avg_relevance,
                    "types": sorted({p.type for p in new_precedents}),
                },
            )
            logger.info(f"Dispute {dispute_id}: merged {len(new_precedents)} new precedents")
        else:
            logger.info(f"Dispute {dispute_id} not found; returning merged analysis without saving")

        return EnhancedAnalysis(
            analysis=analysis,
            precedents=new_precedents,
            enhanced_arguments=enhanced_arguments,
            citations_added=len(new_citations),
        )
