"""
Vector Store with PostgreSQL + pgvector

Stores legal documents and their embedded chunks, and runs cosine
similarity search with optional document_type / category / tags filters.

Indexing is resumable: legal_documents.indexed_chunks is a cursor that is
advanced in the same transaction as each chunk batch insert, so a failed
upload can resume without re-embedding what is already stored.
"""

import json
import logging
from typing import Optional
from dataclasses import dataclass, field

import psycopg2
import psycopg2.errors
from psycopg2.extras import execute_values

from .config import VectorStoreConfig
from .database import Database
from .errors import VectorSearchError

logger = logging.getLogger(__name__)


@dataclass
class SearchFilters:
    """Optional search filters. tags match if ANY tag overlaps.

    Documents uploaded by a user (metadata.user_id set) are only visible
    when owner_id names that user.
    """
    document_type: Optional[str] = None
    category: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    owner_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "document_type": self.document_type,
            "category": self.category,
            "tags": self.tags,
            "owner_id": self.owner_id,
        }


@dataclass
class SearchResult:
    """A single search result with score."""
    chunk_id: str
    document_id: str
    content: str
    score: float
    title: str = ""
    document_type: Optional[str] = None
    category: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    url: Optional[str] = None
    position: int = 0
    metadata: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "chunk_id": self.chunk_id,
            "document_id": self.document_id,
            "content": self.content,
            "score": self.score,
            "title": self.title,
            "document_type": self.document_type,
            "category": self.category,
            "tags": self.tags,
            "url": self.url,
            "position": self.position,
            "metadata": self.metadata,
        }


def clamp_score(score: float) -> float:
    return max(0.0, min(1.0, float(score)))


class VectorStore:
    """
    pgvector-backed store for legal documents and chunks.

    Usage:
        store = VectorStore(VectorStoreConfig(), Database(db_config))
        store.initialize_schema()
        results = store.search(embedding, SearchFilters(category="labor-law"), limit=5)
    """

    def __init__(self, config: Optional[VectorStoreConfig] = None, database: Optional[Database] = None):
        self.config = config or VectorStoreConfig()
        self.db = database or Database()

    @property
    def documents_table(self) -> str:
        return self.config.documents_table

    @property
    def chunks_table(self) -> str:
        return self.config.chunks_table

    def _run(self, operation, label: str):
        """Run a DB operation; driver failures surface as VectorSearchError."""
        try:
            return self.db.execute_with_retry(operation, label)
        except psycopg2.errors.QueryCanceled as e:
            logger.error(f"Vector store {label} timed out after {self.config.search_timeout_ms}ms")
            raise VectorSearchError(
                f"Vector store {label} timed out after {self.config.search_timeout_ms}ms: {e}",
                provider="pgvector", original=e,
            ) from e
        except psycopg2.Error as e:
            logger.error(f"Vector store {label} failed: {e}")
            raise VectorSearchError(
                f"Vector store {label} failed: {e}", provider="pgvector", original=e
            ) from e

    # =========================================================================
    # Schema
    # =========================================================================

    def initialize_schema(self) -> None:
        """Create the pgvector extension, tables and indexes if they don't exist."""
        schema_sql = f"""
        CREATE EXTENSION IF NOT EXISTS vector;

        CREATE TABLE IF NOT EXISTS {self.documents_table} (
            id TEXT PRIMARY KEY,
            title TEXT NOT NULL,
            document_type TEXT NOT NULL,
            category TEXT,
            tags TEXT[] DEFAULT ARRAY[]::TEXT[],
            url TEXT,
            metadata JSONB DEFAULT '{{}}',
            content_hash TEXT,
            total_chunks INT,
            indexed_chunks INT NOT NULL DEFAULT 0,
            index_status TEXT NOT NULL DEFAULT 'pending',
            last_error TEXT,
            created_at TIMESTAMPTZ DEFAULT NOW(),
            updated_at TIMESTAMPTZ DEFAULT NOW()
        );

        CREATE TABLE IF NOT EXISTS {self.chunks_table} (
            id UUID PRIMARY KEY,
            document_id TEXT NOT NULL REFERENCES {self.documents_table}(id) ON DELETE CASCADE,
            content TEXT NOT NULL,
            position INT NOT NULL,
            start_char INT NOT NULL,
            end_char INT NOT NULL,
            embedding VECTOR({self.config.embedding_dimensions}) NOT NULL,
            created_at TIMESTAMPTZ DEFAULT NOW(),
            UNIQUE (document_id, position)
        );

        CREATE INDEX IF NOT EXISTS idx_chunks_document
            ON {self.chunks_table}(document_id);
        CREATE INDEX IF NOT EXISTS idx_documents_type_category
            ON {self.documents_table}(document_type, category);
        CREATE INDEX IF NOT EXISTS idx_documents_tags
            ON {self.documents_table} USING GIN (tags);
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(schema_sql)
                conn.commit()

        self._run(_op, "initialize_schema")
        logger.info("Vector store schema initialized")

    def create_vector_index(self) -> None:
        """Create the HNSW cosine index (call after the initial load)."""
        index_sql = f"""
        CREATE INDEX IF NOT EXISTS idx_chunks_embedding
            ON {self.chunks_table}
            USING hnsw (embedding vector_cosine_ops)
            WITH (m = {int(self.config.hnsw_m)}, ef_construction = {int(self.config.hnsw_ef_construction)});
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(index_sql)
                conn.commit()

        logger.info(
            f"Creating HNSW index (m={self.config.hnsw_m}, "
            f"ef_construction={self.config.hnsw_ef_construction})..."
        )
        self._run(_op, "create_vector_index")
        logger.info("HNSW index created")

    # =========================================================================
    # Documents and indexing state
    # =========================================================================

    def upsert_document(
        self,
        document_id: str,
        title: str,
        document_type: str,
        content_hash: str,
        category: Optional[str] = None,
        tags: Optional[list[str]] = None,
        url: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> dict:
        """
        Insert or update a document row.

        If the stored content hash differs, the old chunks are deleted and
        the indexing cursor is reset to zero in the same transaction.

        Returns:
            Indexing state dict (see get_indexing_state) plus "content_changed"
        """
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    f"SELECT content_hash FROM {self.documents_table} WHERE id = %s FOR UPDATE",
                    (document_id,),
                )
                row = cur.fetchone()
                content_changed = row is None or row["content_hash"] != content_hash

                if row is not None and content_changed:
                    cur.execute(
                        f"DELETE FROM {self.chunks_table} WHERE document_id = %s",
                        (document_id,),
                    )
                    logger.info(f"Content changed for {document_id}, dropped {cur.rowcount} old chunks")

                cur.execute(
                    f"""
                    INSERT INTO {self.documents_table}
                        (id, title, document_type, category, tags, url, metadata, content_hash)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (id) DO UPDATE SET
                        title = EXCLUDED.title,
                        document_type = EXCLUDED.document_type,
                        category = EXCLUDED.category,
                        tags = EXCLUDED.tags,
                        url = EXCLUDED.url,
                        metadata = EXCLUDED.metadata,
                        content_hash = EXCLUDED.content_hash,
                        updated_at = NOW()
                    """,
                    (
                        document_id,
                        title,
                        document_type,
                        category,
                        list(tags or []),
                        url,
                        json.dumps(metadata or {}, ensure_ascii=False),
                        content_hash,
                    ),
                )
                if content_changed:
                    cur.execute(
                        f"""
                        UPDATE {self.documents_table}
                        SET indexed_chunks = 0, total_chunks = NULL,
                            index_status = 'pending', last_error = NULL
                        WHERE id = %s
                        """,
                        (document_id,),
                    )
                cur.execute(
                    f"SELECT indexed_chunks, total_chunks, index_status FROM {self.documents_table} WHERE id = %s",
                    (document_id,),
                )
                state_row = cur.fetchone()
                conn.commit()
            return {
                "document_id": document_id,
                "content_hash": content_hash,
                "indexed_chunks": state_row["indexed_chunks"],
                "total_chunks": state_row["total_chunks"],
                "index_status": state_row["index_status"],
                "content_changed": content_changed,
            }

        return self._run(_op, "upsert_document")

    def get_indexing_state(self, document_id: str) -> Optional[dict]:
        """Return {document_id, content_hash, indexed_chunks, total_chunks, index_status} or None."""
        sql = f"""
        SELECT id, content_hash, indexed_chunks, total_chunks, index_status, last_error
        FROM {self.documents_table}
        WHERE id = %s
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (document_id,))
                row = cur.fetchone()
            if row is None:
                return None
            return {
                "document_id": row["id"],
                "content_hash": row["content_hash"],
                "indexed_chunks": row["indexed_chunks"],
                "total_chunks": row["total_chunks"],
                "index_status": row["index_status"],
                "last_error": row["last_error"],
            }

        return self._run(_op, "get_indexing_state")

    def set_index_status(
        self,
        document_id: str,
        status: str,
        total_chunks: Optional[int] = None,
        error: Optional[str] = None,
    ) -> None:
        """Update index_status (and total_chunks / last_error when given)."""
        sql = f"""
        UPDATE {self.documents_table}
        SET index_status = %s,
            total_chunks = COALESCE(%s, total_chunks),
            last_error = %s,
            updated_at = NOW()
        WHERE id = %s
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (status, total_chunks, error, document_id))
                conn.commit()

        self._run(_op, "set_index_status")

    def reset_document_chunks(self, document_id: str) -> int:
        """Delete all chunks of a document and reset its cursor. Returns deleted count."""
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(f"DELETE FROM {self.chunks_table} WHERE document_id = %s", (document_id,))
                deleted = cur.rowcount
                cur.execute(
                    f"UPDATE {self.documents_table} SET indexed_chunks = 0, index_status = 'pending' WHERE id = %s",
                    (document_id,),
                )
                conn.commit()
            return deleted

        return self._run(_op, "reset_document_chunks")

    def insert_chunks(
        self,
        document_id: str,
        chunks: list[dict],
        embeddings: list[list[float]],
        cursor_after: int,
    ) -> None:
        """
        Batch insert chunks and advance the document's indexing cursor.

        Both happen in one transaction, so the cursor never points past
        chunks that are not stored.

        Args:
            document_id: Parent document id
            chunks: Chunk dicts (from Chunk.to_dict())
            embeddings: Corresponding embedding vectors
            cursor_after: New value of indexed_chunks after this batch
        """
        if len(chunks) != len(embeddings):
            raise ValueError(
                f"Mismatch: {len(chunks)} chunks, {len(embeddings)} embeddings"
            )

        sql = f"""
        INSERT INTO {self.chunks_table}
            (id, document_id, content, position, start_char, end_char, embedding)
        VALUES %s
        ON CONFLICT (id) DO NOTHING
        """

        values = [
            (
                chunk["chunk_id"],
                document_id,
                chunk["content"],
                chunk["position"],
                chunk["start_char"],
                chunk["end_char"],
                embedding,
            )
            for chunk, embedding in zip(chunks, embeddings)
        ]

        def _op(conn):
            with conn.cursor() as cur:
                if values:
                    execute_values(
                        cur,
                        sql,
                        values,
                        template="(%s::uuid, %s, %s, %s, %s, %s, %s::vector)",
                        page_size=500,
                    )
                cur.execute(
                    f"""
                    UPDATE {self.documents_table}
                    SET indexed_chunks = GREATEST(indexed_chunks, %s),
                        index_status = 'indexing', updated_at = NOW()
                    WHERE id = %s
                    """,
                    (cursor_after, document_id),
                )
                conn.commit()
            logger.debug(f"Inserted {len(values)} chunks for {document_id}, cursor -> {cursor_after}")

        self._run(_op, "insert_chunks")

    def delete_document(self, document_id: str) -> bool:
        """Delete a document and (by cascade) all its chunks."""
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(f"DELETE FROM {self.documents_table} WHERE id = %s", (document_id,))
                deleted = cur.rowcount > 0
                conn.commit()
            if deleted:
                logger.info(f"Deleted document {document_id}")
            else:
                logger.warning(f"Document {document_id} not found")
            return deleted

        return self._run(_op, "delete_document")

    def list_documents(self, document_type: Optional[str] = None, category: Optional[str] = None) -> list[dict]:
        """List documents with indexing state, newest first."""
        sql = f"""
        SELECT id, title, document_type, category, tags, url,
               indexed_chunks, total_chunks, index_status, created_at, updated_at
        FROM {self.documents_table}
        """
        conditions = []
        params = []
        if document_type:
            conditions.append("document_type = %s")
            params.append(document_type)
        if category:
            conditions.append("category = %s")
            params.append(category)
        if conditions:
            sql += " WHERE " + " AND ".join(conditions)
        sql += " ORDER BY created_at DESC"

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, params)
                return [dict(row) for row in cur.fetchall()]

        return self._run(_op, "list_documents")

    def get_stats(self) -> dict:
        """Document/chunk counts, per-category and per-type breakdown, last update."""
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    f"SELECT COUNT(*) AS n, MAX(updated_at) AS last_updated FROM {self.documents_table}"
                )
                doc_row = cur.fetchone()
                cur.execute(f"SELECT COUNT(*) AS n FROM {self.chunks_table}")
                chunk_row = cur.fetchone()
                cur.execute(
                    f"SELECT COALESCE(category, 'uncategorized') AS key, COUNT(*) AS n "
                    f"FROM {self.documents_table} GROUP BY 1"
                )
                by_category = {row["key"]: row["n"] for row in cur.fetchall()}
                cur.execute(
                    f"SELECT document_type AS key, COUNT(*) AS n "
                    f"FROM {self.documents_table} GROUP BY 1"
                )
                by_type = {row["key"]: row["n"] for row in cur.fetchall()}

            last_updated = doc_row["last_updated"]
            return {
                "document_count": doc_row["n"],
                "chunk_count": chunk_row["n"],
                "by_category": by_category,
                "by_type": by_type,
                "last_updated": last_updated.isoformat() if last_updated else None,
            }

        return self._run(_op, "get_stats")

    # =========================================================================
    # Search
    # =========================================================================

    def search(
        self,
        query_embedding: list[float],
        filters: Optional[SearchFilters] = None,
        limit: int = 5,
    ) -> list[SearchResult]:
        """
        Semantic search using cosine similarity.

        Args:
            query_embedding: Query embedding vector
            filters: Optional document_type / category / tags filter
            limit: Maximum number of results

        Returns:
            SearchResults ordered by descending score; ties keep chunk
            insertion order.

        Raises:
            VectorSearchError: On connection failure, query error or timeout
        """
        filters = filters or SearchFilters()
        conditions = []
        filter_params = []

        if filters.document_type:
            conditions.append("d.document_type = %s")
            filter_params.append(filters.document_type)
        if filters.category:
            conditions.append("d.category = %s")
            filter_params.append(filters.category)
        if filters.tags:
            conditions.append("d.tags && %s::text[]")
            filter_params.append(list(filters.tags))
        if filters.owner_id:
            conditions.append("(d.metadata->>'user_id' IS NULL OR d.metadata->>'user_id' = %s)")
            filter_params.append(str(filters.owner_id))
        else:
            conditions.append("d.metadata->>'user_id' IS NULL")

        where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        sql = f"""
        SELECT
            c.id AS chunk_id,
            c.document_id,
            c.content,
            c.position,
            d.title,
            d.document_type,
            d.category,
            d.tags,
            d.url,
            d.metadata,
            1 - (c.embedding <=> %s::vector) AS score
        FROM {self.chunks_table} c
        JOIN {self.documents_table} d ON d.id = c.document_id
        {where_clause}
        ORDER BY c.embedding <=> %s::vector, c.created_at, c.position
        LIMIT %s
        """

        params = [query_embedding] + filter_params + [query_embedding, int(limit)]

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute("SET LOCAL statement_timeout = %s", (int(self.config.search_timeout_ms),))
                cur.execute(sql, params)
                rows = cur.fetchall()
            conn.commit()

            return [
                SearchResult(
                    chunk_id=str(row["chunk_id"]),
                    document_id=str(row["document_id"]),
                    content=row["content"],
                    score=clamp_score(row["score"]),
                    title=row["title"] or "",
                    document_type=row["document_type"],
                    category=row["category"],
                    tags=list(row["tags"] or []),
                    url=row["url"],
                    position=row["position"],
                    metadata=row["metadata"] or {},
                )
                for row in rows
            ]

        return self._run(_op, "search")
