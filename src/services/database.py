import os
from contextlib import contextmanager
from typing import Iterator

import psycopg2
import psycopg2.errors
import psycopg2.extras
from src.utils.logger import logger
from src.services.connection_pool import get_connection_pool
from src.voting.exceptions import ConflictError, StoreUnavailableError, classify_exception


class DatabaseService:
    @staticmethod
    def get_connection():
        """Get a database connection from the connection pool."""
        try:
            pool = get_connection_pool()
            conn = pool.get_connection()
            return conn
        except Exception as e:
            logger.error("DatabaseService: Failed to get connection from pool: %s", e)
            raise StoreUnavailableError(f"Failed to get database connection: {e}") from e
    
    @staticmethod
    def _setup_connection(cur):
        """Apply per-transaction timeouts so a stuck lock never hangs a request."""
        timeout_ms = int(os.environ.get("DB_STATEMENT_TIMEOUT_MS", "30000"))
        cur.execute("SET LOCAL statement_timeout = %s", (timeout_ms,))
        # Also set lock timeout to prevent hanging on advisory locks
        cur.execute("SET LOCAL lock_timeout = %s", (timeout_ms,))

    @staticmethod
    @contextmanager
    def transaction() -> Iterator["psycopg2.extras.RealDictCursor"]:
        """
        Run a block inside one database transaction.

        Yields a dict-row cursor. Commits when the block completes and rolls
        back on any exception; psycopg2 failures are re-raised as engine errors.
        """
        pool = get_connection_pool()
        conn = DatabaseService.get_connection()
        broken = False
        try:
            with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                DatabaseService._setup_connection(cur)
                yield cur
            conn.commit()
        except psycopg2.errors.UniqueViolation as e:
            conn.rollback()
            logger.warning("DatabaseService: unique constraint violated: %s", e)
            raise ConflictError(f"Conflicting record: {e.diag.constraint_name or e}") from e
        except psycopg2.OperationalError as e:
            broken = True
            logger.error("Database operational error: %s", e, exc_info=True)
            error_msg = str(e).lower()
            if "timeout" in error_msg or "timed out" in error_msg:
                raise StoreUnavailableError("Database operation timed out. Please try again.") from e
            raise StoreUnavailableError(f"Database error: {e}") from e
        except psycopg2.Error as e:
            logger.error("Database SQL error: %s", e, exc_info=True)
            error = classify_exception(e)
            # InterfaceError means the connection itself is gone
            broken = isinstance(error, StoreUnavailableError)
            if not broken:
                conn.rollback()
            raise error from e
        except BaseException:
            conn.rollback()
            raise
        finally:
            pool.return_connection(conn, close_connection=broken)
