"""
Relational persistence for consultations, usage and processed documents.

Tables: users, rag_consultations, rag_queries, processed_documents,
processed_document_chunks, tax_disputes, tax_dispute_timeline.

Consultation + rag-query + usage increment are written in one transaction.
The usage increment is a conditional UPDATE; zero affected rows means the
user lost a race for their last unit and the whole transaction rolls back.
"""

import json
import uuid
import logging
from dataclasses import dataclass, field
from typing import Optional

import psycopg2

from .database import Database
from .errors import PersistenceError
from .quotas import QuotaExceededError, UserNotFoundError, get_plan

logger = logging.getLogger(__name__)


CONSUME_QUOTA_SQL = """
UPDATE users
SET documents_used = documents_used + 1, updated_at = NOW()
WHERE id = %s AND (is_premium OR documents_used < documents_limit)
"""


@dataclass
class ConsultationRecord:
    """Row data for rag_consultations."""
    user_id: str
    question: str
    answer: str
    legal_area: Optional[str] = None
    confidence: float = 0.0
    sources: list[dict] = field(default_factory=list)
    tokens_used: int = 0
    cost_usd: float = 0.0
    response_time_ms: int = 0
    model: Optional[str] = None


@dataclass
class RAGQueryRecord:
    """Row data for rag_queries."""
    user_id: str
    query: str
    legal_area: Optional[str] = None
    max_results: int = 5
    threshold: float = 0.7
    results: list[dict] = field(default_factory=list)


@dataclass
class ProcessedDocumentRecord:
    """Row data for processed_documents (created as pending)."""
    user_id: str
    original_name: str
    storage_key: str
    file_size: int
    mime_type: str
    legal_area: Optional[str] = None
    document_type: Optional[str] = None


class ConsultationStore:
    """
    Persistence for the orchestrator.

    Every psycopg2 failure surfaces as PersistenceError; quota races
    surface as QuotaExceededError.
    """

    def __init__(self, database: Optional[Database] = None):
        self.db = database or Database()

    def _run(self, operation, label: str):
        try:
            return self.db.execute_with_retry(operation, label)
        except psycopg2.Error as e:
            logger.error(f"{label} failed: {e}")
            raise PersistenceError(f"{label} failed: {e}", provider="postgresql", original=e) from e

    # =========================================================================
    # Schema
    # =========================================================================

    def initialize_schema(self) -> None:
        """Create tables if they don't exist."""
        schema_sql = """
        CREATE TABLE IF NOT EXISTS users (
            id TEXT PRIMARY KEY,
            telegram_id TEXT UNIQUE,
            subscription_plan TEXT NOT NULL DEFAULT 'free',
            documents_used INT NOT NULL DEFAULT 0,
            documents_limit INT NOT NULL DEFAULT 1,
            is_premium BOOLEAN NOT NULL DEFAULT FALSE,
            created_at TIMESTAMPTZ DEFAULT NOW(),
            updated_at TIMESTAMPTZ DEFAULT NOW(),
            CHECK (documents_used >= 0)
        );

        CREATE TABLE IF NOT EXISTS rag_consultations (
            id UUID PRIMARY KEY,
            user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            question TEXT NOT NULL,
            answer TEXT,
            legal_area TEXT,
            confidence REAL,
            sources JSONB DEFAULT '[]',
            tokens_used INT DEFAULT 0,
            cost_usd NUMERIC(10, 6) DEFAULT 0,
            response_time_ms INT DEFAULT 0,
            model TEXT,
            status TEXT NOT NULL DEFAULT 'completed',
            created_at TIMESTAMPTZ DEFAULT NOW(),
            completed_at TIMESTAMPTZ
        );
        CREATE INDEX IF NOT EXISTS idx_consultations_user
            ON rag_consultations(user_id, created_at DESC);

        CREATE TABLE IF NOT EXISTS rag_queries (
            id UUID PRIMARY KEY,
            user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            query TEXT NOT NULL,
            legal_area TEXT,
            max_results INT,
            threshold REAL,
            results JSONB DEFAULT '[]',
            created_at TIMESTAMPTZ DEFAULT NOW()
        );

        CREATE TABLE IF NOT EXISTS processed_documents (
            id UUID PRIMARY KEY,
            user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            original_name TEXT NOT NULL,
            storage_key TEXT NOT NULL,
            file_size BIGINT NOT NULL,
            mime_type TEXT NOT NULL,
            legal_area TEXT,
            document_type TEXT,
            chunks_count INT NOT NULL DEFAULT 0,
            status TEXT NOT NULL DEFAULT 'pending',
            error_message TEXT,
            created_at TIMESTAMPTZ DEFAULT NOW(),
            processed_at TIMESTAMPTZ
        );
        CREATE INDEX IF NOT EXISTS idx_processed_documents_user
            ON processed_documents(user_id, created_at DESC);

        CREATE TABLE IF NOT EXISTS processed_document_chunks (
            id UUID PRIMARY KEY,
            processed_document_id UUID NOT NULL REFERENCES processed_documents(id) ON DELETE CASCADE,
            chunk_index INT NOT NULL,
            content TEXT NOT NULL,
            start_position INT NOT NULL,
            end_position INT NOT NULL,
            vector_id TEXT,
            UNIQUE (processed_document_id, chunk_index)
        );

        CREATE TABLE IF NOT EXISTS tax_disputes (
            id TEXT PRIMARY KEY,
            user_id TEXT REFERENCES users(id) ON DELETE CASCADE,
            tax_type TEXT,
            period TEXT,
            grounds JSONB DEFAULT '[]',
            ai_analysis JSONB DEFAULT '{}',
            created_at TIMESTAMPTZ DEFAULT NOW(),
            updated_at TIMESTAMPTZ DEFAULT NOW()
        );

        CREATE TABLE IF NOT EXISTS tax_dispute_timeline (
            id UUID PRIMARY KEY,
            dispute_id TEXT NOT NULL REFERENCES tax_disputes(id) ON DELETE CASCADE,
            event_type TEXT NOT NULL,
            description TEXT,
            metadata JSONB DEFAULT '{}',
            created_at TIMESTAMPTZ DEFAULT NOW()
        );
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(schema_sql)
                conn.commit()

        self._run(_op, "initialize_schema")
        logger.info("Consultation store schema initialized")

    # =========================================================================
    # Users and quota
    # =========================================================================

    def create_user(self, user_id: str, subscription_plan: str = "free", telegram_id: Optional[str] = None) -> dict:
        """Create a user (no-op if it exists). Limits follow the plan."""
        plan = get_plan(subscription_plan)

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO users (id, telegram_id, subscription_plan, documents_limit, is_premium)
                    VALUES (%s, %s, %s, %s, %s)
                    ON CONFLICT (id) DO NOTHING
                    """,
                    (user_id, telegram_id, plan.name, plan.documents_limit, plan.is_premium),
                )
                conn.commit()

        self._run(_op, "create_user")
        return self.get_user_quota_row(user_id)

    def get_user_quota_row(self, user_id: str) -> Optional[dict]:
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT id, subscription_plan, documents_used, documents_limit, is_premium
                    FROM users WHERE id = %s
                    """,
                    (user_id,),
                )
                row = cur.fetchone()
            conn.commit()
            return dict(row) if row else None

        return self._run(_op, "get_user_quota_row")

    def try_consume_quota(self, user_id: str) -> bool:
        """Conditional increment in its own transaction. True if a unit was taken."""
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(CONSUME_QUOTA_SQL, (user_id,))
                consumed = cur.rowcount == 1
            conn.commit()
            return consumed

        return self._run(_op, "try_consume_quota")

    def update_user_plan(self, user_id: str, plan_name: str, documents_limit: int, is_premium: bool) -> None:
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE users
                    SET subscription_plan = %s, documents_limit = %s, is_premium = %s, updated_at = NOW()
                    WHERE id = %s
                    """,
                    (plan_name, documents_limit, is_premium, user_id),
                )
                updated = cur.rowcount
            conn.commit()
            if not updated:
                raise UserNotFoundError(f"User {user_id} not found")

        self._run(_op, "update_user_plan")

    def _consume_or_raise(self, cur, user_id: str) -> None:
        """Conditional increment inside the caller's transaction."""
        cur.execute(CONSUME_QUOTA_SQL, (user_id,))
        if cur.rowcount == 1:
            return
        cur.execute("SELECT documents_used, documents_limit FROM users WHERE id = %s", (user_id,))
        row = cur.fetchone()
        if row is None:
            raise UserNotFoundError(f"User {user_id} not found")
        raise QuotaExceededError(
            f"Document limit reached ({row['documents_limit']} documents)",
            quota_type="documents",
            current=row["documents_used"],
            limit=row["documents_limit"],
        )

    # =========================================================================
    # Consultations
    # =========================================================================

    def save_consultation(
        self,
        consultation: ConsultationRecord,
        query: RAGQueryRecord,
        consume_quota: bool = False,
    ) -> tuple[str, str]:
        """
        Write consultation + rag query (+ usage increment) atomically.

        Returns:
            (consultation_id, query_id)

        Raises:
            QuotaExceededError: The conditional increment matched no row
            PersistenceError: Any database failure (nothing is committed)
        """
        consultation_id = str(uuid.uuid4())
        query_id = str(uuid.uuid4())

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO rag_consultations
                        (id, user_id, question, answer, legal_area, confidence, sources,
                         tokens_used, cost_usd, response_time_ms, model, status, completed_at)
                    VALUES (%s::uuid, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, 'completed', NOW())
                    """,
                    (
                        consultation_id,
                        consultation.user_id,
                        consultation.question,
                        consultation.answer,
                        consultation.legal_area,
                        consultation.confidence,
                        json.dumps(consultation.sources, ensure_ascii=False),
                        consultation.tokens_used,
                        consultation.cost_usd,
                        consultation.response_time_ms,
                        consultation.model,
                    ),
                )
                cur.execute(
                    """
                    INSERT INTO rag_queries
                        (id, user_id, query, legal_area, max_results, threshold, results)
                    VALUES (%s::uuid, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        query_id,
                        query.user_id,
                        query.query,
                        query.legal_area,
                        query.max_results,
                        query.threshold,
                        json.dumps(query.results, ensure_ascii=False),
                    ),
                )
                if consume_quota:
                    self._consume_or_raise(cur, consultation.user_id)
            conn.commit()
            return consultation_id, query_id

        return self._run(_op, "save_consultation")

    def get_user_consultations(self, user_id: str, limit: int = 10, offset: int = 0) -> list[dict]:
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT id, question, answer, legal_area, confidence, status, created_at
                    FROM rag_consultations
                    WHERE user_id = %s
                    ORDER BY created_at DESC
                    LIMIT %s OFFSET %s
                    """,
                    (user_id, limit, offset),
                )
                rows = cur.fetchall()
            conn.commit()
            return [dict(row, id=str(row["id"])) for row in rows]

        return self._run(_op, "get_user_consultations")

    # =========================================================================
    # Processed documents
    # =========================================================================

    def create_processed_document(self, record: ProcessedDocumentRecord, document_id: Optional[str] = None) -> str:
        """Insert a pending processed document. Returns its id."""
        document_id = document_id or str(uuid.uuid4())

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO processed_documents
                        (id, user_id, original_name, storage_key, file_size, mime_type,
                         legal_area, document_type, status)
                    VALUES (%s::uuid, %s, %s, %s, %s, %s, %s, %s, 'pending')
                    """,
                    (
                        document_id,
                        record.user_id,
                        record.original_name,
                        record.storage_key,
                        record.file_size,
                        record.mime_type,
                        record.legal_area,
                        record.document_type,
                    ),
                )
            conn.commit()
            return document_id

        return self._run(_op, "create_processed_document")

    def complete_processed_document(
        self,
        document_id: str,
        chunks_count: int,
        chunks: Optional[list[dict]] = None,
        consume_quota_for: Optional[str] = None,
    ) -> None:
        """
        Move a pending document to completed, optionally saving its chunks
        and consuming one quota unit, all in one transaction.

        Raises:
            PersistenceError: Document is missing or no longer pending
            QuotaExceededError: The conditional increment matched no row
        """
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE processed_documents
                    SET status = 'completed', chunks_count = %s, processed_at = NOW()
                    WHERE id = %s::uuid AND status = 'pending'
                    """,
                    (chunks_count, document_id),
                )
                if cur.rowcount != 1:
                    raise PersistenceError(f"Processed document {document_id} is not pending")

                for chunk in chunks or []:
                    cur.execute(
                        """
                        INSERT INTO processed_document_chunks
                            (id, processed_document_id, chunk_index, content,
                             start_position, end_position, vector_id)
                        VALUES (%s::uuid, %s::uuid, %s, %s, %s, %s, %s)
                        """,
                        (
                            str(uuid.uuid4()),
                            document_id,
                            chunk["position"],
                            chunk["content"],
                            chunk["start_char"],
                            chunk["end_char"],
                            chunk.get("chunk_id"),
                        ),
                    )

                if consume_quota_for:
                    self._consume_or_raise(cur, consume_quota_for)
            conn.commit()

        self._run(_op, "complete_processed_document")

    def fail_processed_document(self, document_id: str, error_message: str) -> bool:
        """Move a pending document to error. False if it was not pending."""
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE processed_documents
                    SET status = 'error', error_message = %s, processed_at = NOW()
                    WHERE id = %s::uuid AND status = 'pending'
                    """,
                    (error_message[:2000], document_id),
                )
                updated = cur.rowcount == 1
            conn.commit()
            return updated

        return self._run(_op, "fail_processed_document")

    def get_user_processed_documents(self, user_id: str, limit: int = 10, offset: int = 0) -> list[dict]:
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT id, original_name, file_size, mime_type, legal_area, document_type,
                           status, chunks_count, error_message, created_at, processed_at
                    FROM processed_documents
                    WHERE user_id = %s
                    ORDER BY created_at DESC
                    LIMIT %s OFFSET %s
                    """,
                    (user_id, limit, offset),
                )
                rows = cur.fetchall()
            conn.commit()
            return [dict(row, id=str(row["id"])) for row in rows]

        return self._run(_op, "get_user_processed_documents")

    # =========================================================================
    # Stats
    # =========================================================================

    def get_user_stats(self, user_id: str) -> dict:
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT
                        u.documents_used,
                        u.documents_limit,
                        u.subscription_plan,
                        (SELECT COUNT(*) FROM rag_consultations WHERE user_id = u.id) AS total_consultations,
                        (SELECT COUNT(*) FROM processed_documents WHERE user_id = u.id) AS total_processed_documents,
                        (SELECT COUNT(*) FROM rag_queries WHERE user_id = u.id) AS total_rag_queries
                    FROM users u
                    WHERE u.id = %s
                    """,
                    (user_id,),
                )
                row = cur.fetchone()
            conn.commit()
            if row is None:
                raise UserNotFoundError(f"User {user_id} not found")
            return dict(row)

        return self._run(_op, "get_user_stats")

    def get_system_stats(self) -> dict:
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT
                        (SELECT COUNT(*) FROM users) AS total_users,
                        (SELECT COUNT(*) FROM rag_consultations) AS total_consultations,
                        (SELECT COUNT(*) FROM processed_documents) AS total_processed_documents,
                        (SELECT COUNT(*) FROM rag_queries) AS total_rag_queries,
                        (SELECT COUNT(*) FROM processed_document_chunks) AS total_chunks,
                        (SELECT COALESCE(AVG(confidence), 0) FROM rag_consultations) AS average_confidence,
                        (SELECT COALESCE(SUM(cost_usd), 0) FROM rag_consultations) AS total_cost_usd
                    """
                )
                row = cur.fetchone()
            conn.commit()
            stats = dict(row)
            stats["average_confidence"] = float(stats["average_confidence"])
            stats["total_cost_usd"] = float(stats["total_cost_usd"])
            return stats

        return self._run(_op, "get_system_stats")

    # =========================================================================
    # Tax disputes
    # =========================================================================

    def get_tax_dispute(self, dispute_id: str) -> Optional[dict]:
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT id, user_id, tax_type, period, grounds, ai_analysis FROM tax_disputes WHERE id = %s",
                    (dispute_id,),
                )
                row = cur.fetchone()
            conn.commit()
            return dict(row) if row else None

        return self._run(_op, "get_tax_dispute")

    def save_dispute_analysis(
        self,
        dispute_id: str,
        analysis: dict,
        event_type: str,
        description: str,
        metadata: Optional[dict] = None,
    ) -> None:
        """Replace the dispute's ai_analysis and append a timeline event, atomically."""
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    "UPDATE tax_disputes SET ai_analysis = %s, updated_at = NOW() WHERE id = %s",
                    (json.dumps(analysis, ensure_ascii=False, default=str), dispute_id),
                )
                if cur.rowcount != 1:
                    raise PersistenceError(f"Tax dispute {dispute_id} not found")
                cur.execute(
                    """
                    INSERT INTO tax_dispute_timeline (id, dispute_id, event_type, description, metadata)
                    VALUES (%s::uuid, %s, %s, %s, %s)
                    """,
                    (
                        str(uuid.uuid4()),
                        dispute_id,
                        event_type,
                        description,
                        json.dumps(metadata or {}, ensure_ascii=False),
                    ),
                )
            conn.commit()

        self._run(_op, "save_dispute_analysis")
