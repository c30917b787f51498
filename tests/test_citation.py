"""
Tests for execution/consult_rag/citation.py

Covers: legal reference extraction from answers, legal basis and
        argument extraction from precedents, citation formatting.
"""

from types import SimpleNamespace

import pytest


@pytest.fixture
def extractor():
    from execution.consult_rag.citation import CitationExtractor
    return CitationExtractor()


def _source(**overrides):
    data = {
        "id": "chunk-1",
        "document_id": "zozpp",
        "title": "Закон о защите прав потребителей",
        "type": "law",
        "relevance": 0.87,
        "url": None,
    }
    data.update(overrides)
    return SimpleNamespace(**data)


class TestLegalReferences:

    def test_article_mentions_then_law_titles(self, extractor):
        answer = "Согласно ст. 18 и ст.22 вы вправе потребовать возврат. См. также ст. 18."
        sources = [_source(), _source(title="Обзор практики", type="precedent")]

        refs = extractor.extract_legal_references(answer, sources)

        assert refs == ["ст. 18", "ст.22", "Закон о защите прав потребителей"]

    def test_no_matches(self, extractor):
        assert extractor.extract_legal_references("Обратитесь к юристу.", []) == []

    def test_duplicate_titles_collapsed(self, extractor):
        refs = extractor.extract_legal_references("", [_source(), _source(id="chunk-2")])
        assert refs == ["Закон о защите прав потребителей"]


class TestLegalBasis:

    def test_tax_code_articles(self, extractor):
        content = "Налогоплательщик применял ст. 346 НК РФ, а также статьи 252 и Статья 346."
        basis = extractor.extract_legal_basis(content)
        assert basis == ["Статья 346 НК РФ", "Статья 252 НК РФ"]

    def test_court_resolutions(self, extractor):
        content = "Суд сослался на Постановление Пленума ВС РФ от 30 июля 2013 года № 57"
        basis = extractor.extract_legal_basis(content)
        assert any(b.startswith("Постановление Пленума ВС РФ") for b in basis)

    def test_limit(self):
        from execution.consult_rag.citation import CitationExtractor

        content = " ".join(f"ст. {n}" for n in range(100, 120))
        assert len(CitationExtractor(max_legal_basis=5).extract_legal_basis(content)) == 5

    def test_empty(self, extractor):
        assert extractor.extract_legal_basis("") == []


class TestArguments:

    def test_key_phrase_sentences(self, extractor):
        content = (
            "Суд указал, что инспекция неверно определила налоговую базу. "
            "Дело рассмотрено. "
            "Налогоплательщик вправе уменьшить базу на сумму расходов!"
        )
        args = extractor.extract_arguments(content)
        assert args == [
            "Суд указал, что инспекция неверно определила налоговую базу",
            "Налогоплательщик вправе уменьшить базу на сумму расходов",
        ]

    def test_short_sentences_ignored(self, extractor):
        assert extractor.extract_arguments("Нарушение. Суд указал.") == []

    def test_capped(self, extractor):
        content = ". ".join(["Суд указал на существенное нарушение процедуры"] * 10)
        assert len(extractor.extract_arguments(content)) == 3


class TestFormatting:

    def test_court_citation(self):
        from execution.consult_rag.citation import CitationExtractor

        text = CitationExtractor.format_court_citation("АС г. Москвы", "А40-1/2024", "2024-05-01")
        assert text.startswith("Согласно решению АС г. Москвы по делу № А40-1/2024 от 2024-05-01, ")
        assert text.endswith(".")

    def test_law_citation(self):
        from execution.consult_rag.citation import CitationExtractor

        text = CitationExtractor.format_law_citation("Статья 346 НК РФ", "УСН применяется правомерно")
        assert text == "В соответствии с Статья 346 НК РФ, УСН применяется правомерно."

    def test_cite_source(self, extractor):
        citation = extractor.cite(_source(url="https://example.org/zozpp"))
        assert citation.short_format() == "[Закон о защите прав потребителей, закон]"
        assert "релевантность 0.87" in citation.long_format()
        assert citation.to_dict()["chunk_id"] == "chunk-1"
