"""
PostgreSQL connection management.

Shared by the vector store and the consultation store. Provides pooled
connections (psycopg2 ThreadedConnectionPool), a transaction context
manager, and a one-retry wrapper for stale connections.
"""

import logging
from contextlib import contextmanager
from typing import Optional

import psycopg2
import psycopg2.errors
import psycopg2.extras
import psycopg2.pool

from .config import DatabaseConfig

logger = logging.getLogger(__name__)


class Database:
    """
    Thin wrapper around a psycopg2 connection pool.

    Usage:
        db = Database(DatabaseConfig(connection_string=...))
        db.connect()

        with db.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1")
    """

    def __init__(self, config: Optional[DatabaseConfig] = None):
        self.config = config or DatabaseConfig()
        self._pool = None
        self._conn = None

    def connect(self) -> None:
        """Establish database connection (with optional pooling)."""
        try:
            if self.config.use_pooling:
                self._pool = psycopg2.pool.ThreadedConnectionPool(
                    minconn=self.config.pool_min_connections,
                    maxconn=self.config.pool_max_connections,
                    dsn=self.config.connection_string,
                    cursor_factory=psycopg2.extras.RealDictCursor,
                )
                logger.info(
                    f"Connection pool initialized (min={self.config.pool_min_connections}, "
                    f"max={self.config.pool_max_connections})"
                )
            else:
                self._conn = psycopg2.connect(
                    self.config.connection_string,
                    cursor_factory=psycopg2.extras.RealDictCursor,
                )
                self._conn.autocommit = False
                logger.info("Connected to PostgreSQL (single connection)")
        except Exception as e:
            logger.error(f"Database connection failed: {e}")
            raise

    def _is_connected(self) -> bool:
        return self._conn is not None or self._pool is not None

    def _get_connection(self):
        """Get a connection from the pool, or the single connection."""
        if not self._is_connected():
            self.connect()

        if self._pool:
            return self._pool.getconn()

        if self._conn.closed:
            logger.warning("Connection closed, reconnecting...")
            self.connect()
        return self._conn

    def _release_connection(self, conn) -> None:
        """Release a connection back to the pool (if pooling is enabled)."""
        if self._pool and conn:
            self._pool.putconn(conn)

    def _safe_rollback(self, conn) -> None:
        """Rollback a connection, ignoring errors if the connection is dead."""
        try:
            conn.rollback()
        except (psycopg2.InterfaceError, psycopg2.OperationalError):
            pass

    @contextmanager
    def get_connection(self):
        """
        Context manager for a raw connection. The caller commits.

        Automatically releases connection back to pool when done.
        """
        conn = self._get_connection()
        try:
            yield conn
        finally:
            self._release_connection(conn)

    @contextmanager
    def transaction(self):
        """
        Run a block in one transaction: commit on success, rollback on error.

        Usage:
            with db.transaction() as conn:
                with conn.cursor() as cur:
                    cur.execute(...)
        """
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            self._safe_rollback(conn)
            raise
        finally:
            self._release_connection(conn)

    def execute_with_retry(self, operation, label: str = "db_operation"):
        """Execute a DB operation with one retry on stale connection.

        Args:
            operation: Callable(conn) that performs the DB work and returns a result.
                       The operation commits its own writes.
            label: Human-readable name for logging.

        Returns:
            Whatever ``operation`` returns.
        """
        for attempt in range(2):
            conn = self._get_connection()
            try:
                result = operation(conn)
                self._release_connection(conn)
                return result
            except psycopg2.errors.QueryCanceled:
                # statement_timeout; the connection is healthy
                self._safe_rollback(conn)
                self._release_connection(conn)
                raise
            except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
                self._safe_rollback(conn)
                self._release_connection(conn)
                if attempt == 0:
                    logger.warning(f"{label}: stale conn, reconnecting: {e}")
                    self.close()
                    self.connect()
                    continue
                raise
            except Exception:
                self._safe_rollback(conn)
                self._release_connection(conn)
                raise

    def close(self) -> None:
        """Close database connection(s)."""
        if self._pool:
            self._pool.closeall()
            self._pool = None
            logger.info("Connection pool closed")
        if self._conn:
            self._conn.close()
            self._conn = None
