"""
Citation Extraction and Formatting for Russian Legal Texts

Pulls legal references out of free text and formats citations:
- article mentions in LLM answers ("ст. 18")
- legal basis of precedents ("Статья 346 НК РФ", Plenum resolutions)
- argument sentences carrying court-reasoning key phrases
- citation sentences for generated documents
"""

import re
import logging
from typing import Optional
from dataclasses import dataclass

logger = logging.getLogger(__name__)


ARTICLE_MENTION = re.compile(r"ст\.\s*\d+")
TAX_CODE_ARTICLE = re.compile(r"(?:ст(?:атья)?\.?\s*|статьи\s*)(\d+)(?:\s*НК\s*РФ)?", re.IGNORECASE)
COURT_RESOLUTION = re.compile(r"Постановлени[ея]\s+(?:Пленума\s+)?(?:ВС|КС)\s+РФ[^.]{0,100}", re.IGNORECASE)
SENTENCE_SPLIT = re.compile(r"[.!?]+")

ARGUMENT_KEY_PHRASES = (
    "суд указал",
    "суд постановил",
    "налогоплательщик вправе",
    "налоговый орган обязан",
    "в соответствии с",
    "согласно позиции",
    "не может быть признан",
    "является незаконным",
    "нарушение",
)

DOCUMENT_TYPE_LABELS = {
    "law": "закон",
    "precedent": "судебная практика",
    "template": "шаблон",
    "guideline": "разъяснение",
}


@dataclass
class Citation:
    """A citation to a retrieved knowledge-base source."""
    document_title: str
    document_id: str
    chunk_id: str
    document_type: str
    relevance_score: float
    url: Optional[str] = None

    def short_format(self) -> str:
        label = DOCUMENT_TYPE_LABELS.get(self.document_type, self.document_type)
        return f"[{self.document_title}, {label}]"

    def long_format(self) -> str:
        parts = [self.document_title, DOCUMENT_TYPE_LABELS.get(self.document_type, self.document_type)]
        parts.append(f"релевантность {self.relevance_score:.2f}")
        if self.url:
            parts.append(self.url)
        return " | ".join(parts)

    def to_dict(self) -> dict:
        return {
            "document_title": self.document_title,
            "document_id": self.document_id,
            "chunk_id": self.chunk_id,
            "document_type": self.document_type,
            "relevance_score": self.relevance_score,
            "url": self.url,
            "short_citation": self.short_format(),
            "long_citation": self.long_format(),
        }


def _dedupe(items: list[str]) -> list[str]:
    seen = set()
    result = []
    for item in items:
        if item not in seen:
            seen.add(item)
            result.append(item)
    return result


class CitationExtractor:
    """
    Extracts legal references and formats citations.

    Stateless; one instance can be shared across requests.
    """

    def __init__(self, max_legal_basis: int = 5, max_arguments: int = 3, min_sentence_length: int = 20):
        self.max_legal_basis = max_legal_basis
        self.max_arguments = max_arguments
        self.min_sentence_length = min_sentence_length

    def cite(self, source) -> Citation:
        """Build a Citation from anything with LegalSource-like attributes."""
        return Citation(
            document_title=source.title or "Документ без названия",
            document_id=source.document_id,
            chunk_id=source.id,
            document_type=source.type,
            relevance_score=source.relevance,
            url=source.url,
        )

    def extract_legal_references(self, answer: str, sources: Optional[list] = None) -> list[str]:
        """
        Article mentions in the answer, then titles of law sources.

        Deduplicated, first occurrence wins.
        """
        references = ARTICLE_MENTION.findall(answer or "")
        for source in sources or []:
            if source.type == "law" and source.title:
                references.append(source.title)
        return _dedupe(references)

    def extract_legal_basis(self, content: str) -> list[str]:
        """Tax Code articles and Supreme/Constitutional Court resolutions mentioned in content."""
        if not content:
            return []

        basis = [f"Статья {m.group(1)} НК РФ" for m in TAX_CODE_ARTICLE.finditer(content)]
        basis.extend(m.group(0).strip() for m in COURT_RESOLUTION.finditer(content))
        return _dedupe(basis)[: self.max_legal_basis]

    def extract_arguments(self, content: str) -> list[str]:
        """Sentences containing court-reasoning key phrases (at most max_arguments)."""
        if not content:
            return []

        arguments = []
        for sentence in SENTENCE_SPLIT.split(content):
            trimmed = sentence.strip()
            if len(trimmed) < self.min_sentence_length:
                continue
            lowered = trimmed.lower()
            if any(phrase in lowered for phrase in ARGUMENT_KEY_PHRASES):
                arguments.append(trimmed)
            if len(arguments) >= self.max_arguments:
                break
        return arguments

    @staticmethod
    def format_court_citation(court: str, case_number: str, date: str, argument: Optional[str] = None) -> str:
        argument = argument or "аналогичная позиция налогоплательщика была признана обоснованной"
        return f"Согласно решению {court} по делу № {case_number} от {date}, {argument}."

    @staticmethod
    def format_law_citation(legal_basis: str, argument: Optional[str] = None) -> str:
        argument = argument or "применяется соответствующая норма"
        return f"В соответствии с {legal_basis}, {argument}."


# CLI for testing
if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)

    sample = (
        "Суд указал, что налоговый орган не вправе доначислять налог без проверки. "
        "В соответствии со ст. 346 НК РФ налогоплательщик вправе применять УСН. "
        "Постановление Пленума ВС РФ от 30.07.2013 № 57 разъясняет порядок."
    )
    extractor = CitationExtractor()
    print(f"Legal basis: {extractor.extract_legal_basis(sample)}")
    print(f"Arguments: {extractor.extract_arguments(sample)}")
    print(f"References: {extractor.extract_legal_references(sample)}")
