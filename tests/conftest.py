"""
Shared fixtures and test utilities for Consultation RAG tests.

Provides deterministic embeddings, an in-memory vector store, an in-memory
consultation store with the same conditional-update quota semantics as the
SQL store, and a fake LLM, so no test needs API keys, a database or
network access.
"""

import sys
import math
import uuid
import hashlib
from pathlib import Path

import pytest

# ---------------------------------------------------------------------------
# Path setup - ensure the execution package is importable
# ---------------------------------------------------------------------------
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from execution.consult_rag.errors import EmbeddingError, LLMError, PersistenceError  # noqa: E402


# ---------------------------------------------------------------------------
# Sample Russian legal texts
# ---------------------------------------------------------------------------

CONSUMER_LAW_TEXT = (
    "Статья 18. Права потребителя при обнаружении в товаре недостатков. "
    "Потребитель в случае обнаружения в товаре недостатков, если они не были оговорены продавцом, "
    "по своему выбору вправе потребовать замены на товар этой же марки либо отказаться от "
    "исполнения договора купли-продажи и потребовать возврата уплаченной за товар суммы. "
)

PROPERTY_TAX_PRECEDENT = (
    "Постановление Арбитражного суда Московского округа. "
    "Суд указал, что налоговый орган обязан учитывать кадастровую стоимость объекта, "
    "установленную решением комиссии, при исчислении налога на имущество. "
    "В соответствии с пунктом 15 статьи 378.2 НК РФ изменение кадастровой стоимости "
    "учитывается при определении налоговой базы. Решение инспекции является незаконным."
)


# ---------------------------------------------------------------------------
# Mock embedding service
# ---------------------------------------------------------------------------

class MockEmbeddingService:
    """Deterministic mock embedding service -- never calls external APIs."""

    def __init__(self, dimensions=8, fail_after_batches=None):
        self._dimensions = dimensions
        self.fail_after_batches = fail_after_batches
        self.batches = []
        self.queries = []

    def embed(self, text):
        return self._deterministic_embedding(text)

    def embed_query(self, query):
        self.queries.append(query)
        return self._deterministic_embedding(query)

    def embed_documents(self, texts):
        if self.fail_after_batches is not None and len(self.batches) >= self.fail_after_batches:
            raise EmbeddingError("provider unavailable", provider="mock")
        self.batches.append(list(texts))
        return [self._deterministic_embedding(t) for t in texts]

    @property
    def embedded_texts(self):
        return [t for batch in self.batches for t in batch]

    def _deterministic_embedding(self, text):
        h = hashlib.sha256(text.encode("utf-8")).digest()
        return [(h[i] / 255.0) + 0.01 for i in range(self._dimensions)]

    @property
    def dimensions(self):
        return self._dimensions


@pytest.fixture
def mock_embedding_service():
    return MockEmbeddingService()


# ---------------------------------------------------------------------------
# In-memory vector store (no database needed)
# ---------------------------------------------------------------------------

def _cosine(a, b):
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


class InMemoryVectorStore:
    """In-memory stand-in for VectorStore with the same method surface.

    Search scores are cosine similarity over stored chunks, unless
    canned_results is set, in which case those results are filtered and
    ranked instead.
    """

    def __init__(self):
        self.documents = {}
        self.chunks = []  # insertion order
        self.canned_results = None
        self.fail_search = False
        self.search_calls = []

    def initialize_schema(self):
        pass

    def upsert_document(self, document_id, title, document_type, content_hash,
                        category=None, tags=None, url=None, metadata=None):
        existing = self.documents.get(document_id)
        content_changed = existing is None or existing["content_hash"] != content_hash
        if existing is not None and content_changed:
            self.chunks = [c for c in self.chunks if c["document_id"] != document_id]
        doc = existing or {}
        doc.update({
            "id": document_id,
            "title": title,
            "document_type": document_type,
            "category": category,
            "tags": list(tags or []),
            "url": url,
            "metadata": dict(metadata or {}),
            "content_hash": content_hash,
        })
        if content_changed:
            doc.update({"indexed_chunks": 0, "total_chunks": None, "index_status": "pending", "last_error": None})
        self.documents[document_id] = doc
        return {
            "document_id": document_id,
            "content_hash": content_hash,
            "indexed_chunks": doc["indexed_chunks"],
            "total_chunks": doc["total_chunks"],
            "index_status": doc["index_status"],
            "content_changed": content_changed,
        }

    def get_indexing_state(self, document_id):
        doc = self.documents.get(document_id)
        if doc is None:
            return None
        return {
            "document_id": document_id,
            "content_hash": doc["content_hash"],
            "indexed_chunks": doc["indexed_chunks"],
            "total_chunks": doc["total_chunks"],
            "index_status": doc["index_status"],
            "last_error": doc["last_error"],
        }

    def set_index_status(self, document_id, status, total_chunks=None, error=None):
        doc = self.documents[document_id]
        doc["index_status"] = status
        if total_chunks is not None:
            doc["total_chunks"] = total_chunks
        doc["last_error"] = error

    def reset_document_chunks(self, document_id):
        before = len(self.chunks)
        self.chunks = [c for c in self.chunks if c["document_id"] != document_id]
        self.documents[document_id]["indexed_chunks"] = 0
        return before - len(self.chunks)

    def insert_chunks(self, document_id, chunks, embeddings, cursor_after):
        if len(chunks) != len(embeddings):
            raise ValueError("chunks/embeddings length mismatch")
        known = {(c["document_id"], c["position"]) for c in self.chunks}
        for chunk, embedding in zip(chunks, embeddings):
            if (document_id, chunk["position"]) in known:
                continue
            self.chunks.append(dict(chunk, document_id=document_id, embedding=embedding))
        doc = self.documents[document_id]
        doc["indexed_chunks"] = max(doc["indexed_chunks"], cursor_after)
        doc["index_status"] = "indexing"

    def delete_document(self, document_id):
        existed = self.documents.pop(document_id, None) is not None
        self.chunks = [c for c in self.chunks if c["document_id"] != document_id]
        return existed

    def list_documents(self, document_type=None, category=None):
        return [
            d for d in self.documents.values()
            if (document_type is None or d["document_type"] == document_type)
            and (category is None or d["category"] == category)
        ]

    def get_stats(self):
        by_category, by_type = {}, {}
        for d in self.documents.values():
            key = d["category"] or "uncategorized"
            by_category[key] = by_category.get(key, 0) + 1
            by_type[d["document_type"]] = by_type.get(d["document_type"], 0) + 1
        return {
            "document_count": len(self.documents),
            "chunk_count": len(self.chunks),
            "by_category": by_category,
            "by_type": by_type,
            "last_updated": None,
        }

    def _matches(self, result, filters):
        owner = (result.metadata or {}).get("user_id")
        if owner is not None and (filters is None or str(filters.owner_id) != owner):
            return False
        if filters is None:
            return True
        if filters.document_type and result.document_type != filters.document_type:
            return False
        if filters.category and result.category != filters.category:
            return False
        if filters.tags and not set(filters.tags) & set(result.tags):
            return False
        return True

    def search(self, query_embedding, filters=None, limit=5):
        from execution.consult_rag.errors import VectorSearchError
        from execution.consult_rag.vector_store import SearchResult, clamp_score

        self.search_calls.append({"filters": filters, "limit": limit})
        if self.fail_search:
            raise VectorSearchError("connection refused", provider="pgvector")

        if self.canned_results is not None:
            candidates = list(self.canned_results)
        else:
            candidates = []
            for chunk in self.chunks:
                doc = self.documents[chunk["document_id"]]
                candidates.append(SearchResult(
                    chunk_id=chunk["chunk_id"],
                    document_id=chunk["document_id"],
                    content=chunk["content"],
                    score=clamp_score(_cosine(query_embedding, chunk["embedding"])),
                    title=doc["title"],
                    document_type=doc["document_type"],
                    category=doc["category"],
                    tags=doc["tags"],
                    url=doc["url"],
                    position=chunk["position"],
                    metadata=doc["metadata"],
                ))

        results = [r for r in candidates if self._matches(r, filters)]
        results.sort(key=lambda r: -r.score)
        return results[:limit]


@pytest.fixture
def vector_store():
    return InMemoryVectorStore()


def make_result(chunk_id, score, document_id=None, document_type="law", category=None,
                tags=None, title=None, content=None, metadata=None):
    """Build a SearchResult for canned search responses."""
    from execution.consult_rag.vector_store import SearchResult
    return SearchResult(
        chunk_id=chunk_id,
        document_id=document_id or f"doc-{chunk_id}",
        content=content or f"Текст фрагмента {chunk_id}",
        score=score,
        title=title or f"Документ {chunk_id}",
        document_type=document_type,
        category=category,
        tags=list(tags or []),
        metadata=dict(metadata or {}),
    )


# ---------------------------------------------------------------------------
# In-memory consultation store
# ---------------------------------------------------------------------------

class InMemoryConsultationStore:
    """Dict-backed ConsultationStore.

    save_consultation and complete_processed_document are all-or-nothing
    and use the same conditional quota increment as the SQL store.
    """

    def __init__(self):
        self.users = {}
        self.consultations = []
        self.queries = []
        self.processed_documents = {}
        self.processed_chunks = []
        self.disputes = {}
        self.timeline = []
        self.fail_saves = False

    def initialize_schema(self):
        pass

    def create_user(self, user_id, subscription_plan="free", telegram_id=None,
                    documents_used=0, documents_limit=None, is_premium=None):
        from execution.consult_rag.quotas import get_plan
        plan = get_plan(subscription_plan)
        self.users.setdefault(user_id, {
            "id": user_id,
            "subscription_plan": plan.name,
            "documents_used": documents_used,
            "documents_limit": plan.documents_limit if documents_limit is None else documents_limit,
            "is_premium": plan.is_premium if is_premium is None else is_premium,
        })
        return self.get_user_quota_row(user_id)

    def get_user_quota_row(self, user_id):
        row = self.users.get(user_id)
        return dict(row) if row else None

    def _consume(self, user_id):
        user = self.users.get(user_id)
        if user is None:
            return False
        if user["is_premium"] or user["documents_used"] < user["documents_limit"]:
            user["documents_used"] += 1
            return True
        return False

    def try_consume_quota(self, user_id):
        return self._consume(user_id)

    def update_user_plan(self, user_id, plan_name, documents_limit, is_premium):
        from execution.consult_rag.quotas import UserNotFoundError
        if user_id not in self.users:
            raise UserNotFoundError(f"User {user_id} not found")
        self.users[user_id].update(
            subscription_plan=plan_name, documents_limit=documents_limit, is_premium=is_premium
        )

    def _consume_or_raise(self, user_id):
        from execution.consult_rag.quotas import QuotaExceededError, UserNotFoundError
        if self._consume(user_id):
            return
        user = self.users.get(user_id)
        if user is None:
            raise UserNotFoundError(f"User {user_id} not found")
        raise QuotaExceededError(
            "Document limit reached",
            current=user["documents_used"],
            limit=user["documents_limit"],
        )

    def save_consultation(self, consultation, query, consume_quota=False):
        if self.fail_saves:
            raise PersistenceError("save_consultation failed: connection reset", provider="postgresql")
        if consume_quota:
            self._consume_or_raise(consultation.user_id)
        consultation_id, query_id = str(uuid.uuid4()), str(uuid.uuid4())
        self.consultations.append({"id": consultation_id, **consultation.__dict__})
        self.queries.append({"id": query_id, **query.__dict__})
        return consultation_id, query_id

    def get_user_consultations(self, user_id, limit=10, offset=0):
        rows = [c for c in reversed(self.consultations) if c["user_id"] == user_id]
        return rows[offset:offset + limit]

    def create_processed_document(self, record, document_id=None):
        document_id = document_id or str(uuid.uuid4())
        self.processed_documents[document_id] = {
            "id": document_id, **record.__dict__,
            "status": "pending", "chunks_count": 0, "error_message": None,
        }
        return document_id

    def complete_processed_document(self, document_id, chunks_count, chunks=None, consume_quota_for=None):
        doc = self.processed_documents.get(document_id)
        if doc is None or doc["status"] != "pending":
            raise PersistenceError(f"Processed document {document_id} is not pending")
        if consume_quota_for:
            self._consume_or_raise(consume_quota_for)
        doc.update(status="completed", chunks_count=chunks_count)
        for chunk in chunks or []:
            self.processed_chunks.append({"processed_document_id": document_id, **chunk})

    def fail_processed_document(self, document_id, error_message):
        doc = self.processed_documents.get(document_id)
        if doc is None or doc["status"] != "pending":
            return False
        doc.update(status="error", error_message=error_message)
        return True

    def get_user_processed_documents(self, user_id, limit=10, offset=0):
        rows = [d for d in self.processed_documents.values() if d["user_id"] == user_id]
        return rows[offset:offset + limit]

    def get_user_stats(self, user_id):
        from execution.consult_rag.quotas import UserNotFoundError
        user = self.users.get(user_id)
        if user is None:
            raise UserNotFoundError(f"User {user_id} not found")
        return {
            "documents_used": user["documents_used"],
            "documents_limit": user["documents_limit"],
            "subscription_plan": user["subscription_plan"],
            "total_consultations": sum(1 for c in self.consultations if c["user_id"] == user_id),
            "total_processed_documents": sum(
                1 for d in self.processed_documents.values() if d["user_id"] == user_id
            ),
            "total_rag_queries": sum(1 for q in self.queries if q["user_id"] == user_id),
        }

    def get_system_stats(self):
        confidences = [c["confidence"] for c in self.consultations]
        return {
            "total_users": len(self.users),
            "total_consultations": len(self.consultations),
            "total_processed_documents": len(self.processed_documents),
            "total_rag_queries": len(self.queries),
            "total_chunks": len(self.processed_chunks),
            "average_confidence": sum(confidences) / len(confidences) if confidences else 0.0,
            "total_cost_usd": sum(c["cost_usd"] for c in self.consultations),
        }

    def get_tax_dispute(self, dispute_id):
        dispute = self.disputes.get(dispute_id)
        return dict(dispute) if dispute else None

    def save_dispute_analysis(self, dispute_id, analysis, event_type, description, metadata=None):
        if dispute_id not in self.disputes:
            raise PersistenceError(f"Tax dispute {dispute_id} not found")
        self.disputes[dispute_id]["ai_analysis"] = analysis
        self.timeline.append({
            "dispute_id": dispute_id,
            "event_type": event_type,
            "description": description,
            "metadata": metadata or {},
        })


@pytest.fixture
def consultation_store():
    return InMemoryConsultationStore()


# ---------------------------------------------------------------------------
# Fake LLM
# ---------------------------------------------------------------------------

class FakeLLM:
    """Records prompts and returns a canned answer (or raises LLMError)."""

    def __init__(self, answer="Согласно ст. 18 Закона о защите прав потребителей вы вправе вернуть товар.",
                 prompt_tokens=None, completion_tokens=None):
        self.answer = answer
        self.prompt_tokens = prompt_tokens
        self.completion_tokens = completion_tokens
        self.error = None
        self.calls = []

    def complete(self, system_prompt, user_prompt):
        from execution.consult_rag.llm import LLMCompletion
        self.calls.append({"system": system_prompt, "user": user_prompt})
        if self.error is not None:
            raise self.error
        return LLMCompletion(
            content=self.answer,
            model="fake-model",
            prompt_tokens=self.prompt_tokens,
            completion_tokens=self.completion_tokens,
        )


@pytest.fixture
def fake_llm():
    return FakeLLM()


# ---------------------------------------------------------------------------
# Wired services
# ---------------------------------------------------------------------------

@pytest.fixture
def rag_config(tmp_path):
    from execution.consult_rag.config import RAGConfig
    config = RAGConfig()
    config.storage.root_dir = str(tmp_path / "storage")
    config.embedding.dimensions = 8
    config.vector.embedding_dimensions = 8
    config.indexing.batch_size = 2
    return config


@pytest.fixture
def object_storage(rag_config):
    from execution.consult_rag.object_storage import ObjectStorage
    return ObjectStorage(rag_config.storage)


@pytest.fixture
def knowledge_service(rag_config, mock_embedding_service, vector_store, object_storage):
    from execution.consult_rag.knowledge import LegalKnowledgeService
    return LegalKnowledgeService(rag_config, mock_embedding_service, vector_store, object_storage)


@pytest.fixture
def quota_manager(consultation_store):
    from execution.consult_rag.quotas import QuotaManager
    return QuotaManager(consultation_store)


@pytest.fixture
def metrics():
    from execution.consult_rag.metrics import MetricsCollector
    return MetricsCollector()


@pytest.fixture
def rag_service(rag_config, knowledge_service, fake_llm, consultation_store, quota_manager, metrics):
    from execution.consult_rag.rag_service import RAGService
    return RAGService(rag_config, knowledge_service, fake_llm, consultation_store, quota_manager, metrics=metrics)


# ---------------------------------------------------------------------------
# Singleton resets between tests
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def reset_metrics_singleton():
    """Reset the MetricsCollector singleton between tests."""
    import execution.consult_rag.metrics as metrics_mod
    metrics_mod.MetricsCollector._instance = None
    metrics_mod._collector = None
    yield
    metrics_mod.MetricsCollector._instance = None
    metrics_mod._collector = None


@pytest.fixture(autouse=True)
def reset_quota_manager_singleton():
    """Reset the global QuotaManager between tests."""
    import execution.consult_rag.quotas as quotas_mod
    quotas_mod._manager = None
    yield
    quotas_mod._manager = None
