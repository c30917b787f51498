"""
Tests for execution/consult_rag/consultation_store.py and database.py

A real Database object is used with its connection replaced by a mock,
so commit / rollback / retry behaviour of execute_with_retry is exercised
together with the store's SQL.
"""

from unittest.mock import MagicMock, patch

import pytest


@pytest.fixture
def db_conn():
    """(store, cursor, connection) over a mocked psycopg2 connection."""
    from execution.consult_rag.config import DatabaseConfig
    from execution.consult_rag.consultation_store import ConsultationStore
    from execution.consult_rag.database import Database

    cur = MagicMock()
    cur.rowcount = 1
    conn = MagicMock()
    conn.cursor.return_value.__enter__.return_value = cur

    db = Database(DatabaseConfig(use_pooling=False))
    with patch.object(db, "_get_connection", return_value=conn), \
            patch.object(db, "connect"), patch.object(db, "close"):
        yield ConsultationStore(db), cur, conn


def _records():
    from execution.consult_rag.consultation_store import ConsultationRecord, RAGQueryRecord

    consultation = ConsultationRecord(
        user_id="u1",
        question="Как вернуть товар?",
        answer="Согласно ст. 18 ...",
        confidence=0.8,
        sources=[{"id": "c1", "title": "ЗоЗПП"}],
        tokens_used=150,
        cost_usd=0.0045,
    )
    query = RAGQueryRecord(user_id="u1", query="Как вернуть товар?")
    return consultation, query


class TestQuotaUpdate:

    def test_consume_sql_is_conditional(self):
        from execution.consult_rag.consultation_store import CONSUME_QUOTA_SQL

        assert "documents_used = documents_used + 1" in CONSUME_QUOTA_SQL
        assert "is_premium OR documents_used < documents_limit" in CONSUME_QUOTA_SQL

    def test_try_consume_true_on_one_row(self, db_conn):
        store, cur, conn = db_conn
        cur.rowcount = 1
        assert store.try_consume_quota("u1") is True
        conn.commit.assert_called_once()

    def test_try_consume_false_on_zero_rows(self, db_conn):
        store, cur, _ = db_conn
        cur.rowcount = 0
        assert store.try_consume_quota("u1") is False

    def test_update_plan_unknown_user(self, db_conn):
        from execution.consult_rag.quotas import UserNotFoundError

        store, cur, _ = db_conn
        cur.rowcount = 0
        with pytest.raises(UserNotFoundError):
            store.update_user_plan("ghost", "premium", 999, True)


class TestSaveConsultation:

    def test_writes_consultation_query_and_usage(self, db_conn):
        store, cur, conn = db_conn
        consultation, query = _records()

        consultation_id, query_id = store.save_consultation(consultation, query, consume_quota=True)

        statements = [c.args[0] for c in cur.execute.call_args_list]
        assert "INSERT INTO rag_consultations" in statements[0]
        assert "INSERT INTO rag_queries" in statements[1]
        assert "documents_used = documents_used + 1" in statements[2]
        assert consultation_id != query_id
        conn.commit.assert_called_once()
        conn.rollback.assert_not_called()

    def test_sources_serialized_as_json(self, db_conn):
        store, cur, _ = db_conn
        consultation, query = _records()
        store.save_consultation(consultation, query)

        params = cur.execute.call_args_list[0].args[1]
        assert '"ЗоЗПП"' in params[6]

    def test_lost_race_rolls_back(self, db_conn):
        from execution.consult_rag.quotas import QuotaExceededError

        store, cur, conn = db_conn
        cur.rowcount = 0
        cur.fetchone.return_value = {"documents_used": 1, "documents_limit": 1}
        consultation, query = _records()

        with pytest.raises(QuotaExceededError) as exc_info:
            store.save_consultation(consultation, query, consume_quota=True)

        assert exc_info.value.current == 1
        conn.commit.assert_not_called()
        conn.rollback.assert_called_once()

    def test_missing_user_on_consume(self, db_conn):
        from execution.consult_rag.quotas import UserNotFoundError

        store, cur, _ = db_conn
        cur.rowcount = 0
        cur.fetchone.return_value = None
        consultation, query = _records()

        with pytest.raises(UserNotFoundError):
            store.save_consultation(consultation, query, consume_quota=True)

    def test_driver_error_becomes_persistence_error(self, db_conn):
        import psycopg2
        from execution.consult_rag.errors import PersistenceError

        store, cur, conn = db_conn
        cur.execute.side_effect = psycopg2.IntegrityError("insert or update violates foreign key")
        consultation, query = _records()

        with pytest.raises(PersistenceError) as exc_info:
            store.save_consultation(consultation, query)
        assert exc_info.value.provider == "postgresql"
        conn.rollback.assert_called()

    def test_stale_connection_retried_once(self, db_conn):
        import psycopg2

        store, cur, conn = db_conn
        cur.fetchone.side_effect = [psycopg2.OperationalError("server closed the connection"), None]

        assert store.get_user_quota_row("u1") is None
        assert cur.fetchone.call_count == 2
        store.db.connect.assert_called_once()


class TestProcessedDocuments:

    def test_create_uses_given_id(self, db_conn):
        from execution.consult_rag.consultation_store import ProcessedDocumentRecord

        store, cur, _ = db_conn
        record = ProcessedDocumentRecord("u1", "claim.txt", "documents/u1/d1/claim.txt", 10, "text/plain")

        assert store.create_processed_document(record, document_id="d1") == "d1"
        assert cur.execute.call_args.args[1][0] == "d1"

    def test_complete_saves_chunks_and_consumes(self, db_conn):
        store, cur, conn = db_conn
        chunks = [
            {"chunk_id": "c0", "content": "a", "position": 0, "start_char": 0, "end_char": 1000},
            {"chunk_id": "c1", "content": "b", "position": 1, "start_char": 800, "end_char": 1800},
        ]

        store.complete_processed_document("d1", 2, chunks, consume_quota_for="u1")

        statements = [c.args[0] for c in cur.execute.call_args_list]
        assert "status = 'completed'" in statements[0]
        assert sum("processed_document_chunks" in s for s in statements) == 2
        assert "documents_used = documents_used + 1" in statements[-1]
        chunk_params = cur.execute.call_args_list[2].args[1]
        assert chunk_params[2:6] == (1, "b", 800, 1800)
        conn.commit.assert_called_once()

    def test_complete_rejects_non_pending(self, db_conn):
        from execution.consult_rag.errors import PersistenceError

        store, cur, conn = db_conn
        cur.rowcount = 0
        with pytest.raises(PersistenceError, match="not pending"):
            store.complete_processed_document("d1", 2)
        conn.rollback.assert_called_once()

    def test_fail_truncates_message(self, db_conn):
        store, cur, _ = db_conn
        assert store.fail_processed_document("d1", "x" * 5000) is True
        assert len(cur.execute.call_args.args[1][0]) == 2000


class TestStats:

    def test_user_stats_unknown_user(self, db_conn):
        from execution.consult_rag.quotas import UserNotFoundError

        store, cur, _ = db_conn
        cur.fetchone.return_value = None
        with pytest.raises(UserNotFoundError):
            store.get_user_stats("ghost")

    def test_system_stats_converts_decimals(self, db_conn):
        from decimal import Decimal

        store, cur, _ = db_conn
        cur.fetchone.return_value = {
            "total_users": 2, "total_consultations": 3, "total_processed_documents": 1,
            "total_rag_queries": 3, "total_chunks": 4,
            "average_confidence": Decimal("0.75"), "total_cost_usd": Decimal("0.0135"),
        }
        stats = store.get_system_stats()
        assert stats["average_confidence"] == 0.75
        assert isinstance(stats["total_cost_usd"], float)


class TestDisputes:

    def test_save_analysis_appends_timeline(self, db_conn):
        store, cur, conn = db_conn
        store.save_dispute_analysis("disp-1", {"precedents": []}, "precedents_found", "Найдено 0", {"n": 0})

        statements = [c.args[0] for c in cur.execute.call_args_list]
        assert "UPDATE tax_disputes" in statements[0]
        assert "INSERT INTO tax_dispute_timeline" in statements[1]
        conn.commit.assert_called_once()

    def test_save_analysis_missing_dispute(self, db_conn):
        from execution.consult_rag.errors import PersistenceError

        store, cur, _ = db_conn
        cur.rowcount = 0
        with pytest.raises(PersistenceError):
            store.save_dispute_analysis("nope", {}, "precedents_found", "")
