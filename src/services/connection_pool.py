"""
Shared psycopg2 connection pool for the PostgreSQL entity store.

The pool is opened lazily on the first checkout. After repeated failures it
refuses checkouts for a cool-down window so a misconfigured database is not
hammered with new authentication attempts on every request.
"""

import threading
import time
from typing import Any, Dict, Optional

from psycopg2.pool import ThreadedConnectionPool

from src.config.common_settings import DB_POOL_MAX, DB_POOL_MIN
from src.config.database_config import get_database_config
from src.utils.logger import logger

MAX_FAILURES = 3
COOL_DOWN_SECONDS = 30


class PostgresConnectionPool:
    """Lazily opened ThreadedConnectionPool with a failure cool-down."""

    def __init__(self, min_connections: int = 1, max_connections: int = 5):
        self.min_connections = min_connections
        self.max_connections = max_connections
        self._pool: Optional[ThreadedConnectionPool] = None
        self._lock = threading.Lock()
        self._failures = 0
        self._last_failure = 0.0

    def _cooling_down(self) -> bool:
        return self._failures >= MAX_FAILURES and time.time() - self._last_failure <= COOL_DOWN_SECONDS

    def _fail(self, what: str, error: Exception) -> RuntimeError:
        self._failures += 1
        self._last_failure = time.time()
        logger.error("PostgresConnectionPool: %s failed (%d in a row): %s", what, self._failures, error)
        return RuntimeError(f"{what} failed: {error}")

    def _checkout(self):
        conn = self._pool.getconn()
        # A stale socket only shows up on first use
        with conn.cursor() as cur:
            cur.execute("SELECT 1")
        conn.rollback()
        return conn

    def get_connection(self):
        with self._lock:
            if self._cooling_down():
                raise RuntimeError(
                    f"Connection pool cooling down after {self._failures} failures; retry in {COOL_DOWN_SECONDS}s"
                )
            if self._pool is None:
                logger.info(
                    "PostgresConnectionPool: opening pool (min=%d, max=%d)", self.min_connections, self.max_connections
                )
                try:
                    params = get_database_config().get_connection_params()
                    self._pool = ThreadedConnectionPool(self.min_connections, self.max_connections, **params)
                except Exception as e:
                    raise self._fail("Opening the pool", e) from e
            try:
                conn = self._checkout()
            except Exception as e:
                error = self._fail("Connection checkout", e)
                self._close_locked()
                raise error from e
            self._failures = 0
            return conn

    def return_connection(self, conn, close_connection: bool = False):
        """Give a connection back; ``close_connection`` discards a broken one."""
        pool = self._pool
        if pool is None:
            return
        try:
            pool.putconn(conn, close=close_connection)
        except Exception as e:
            logger.error("PostgresConnectionPool: could not return connection: %s", e)

    def _close_locked(self):
        if self._pool is None:
            return
        try:
            self._pool.closeall()
            logger.info("PostgresConnectionPool: pool closed")
        except Exception as e:
            logger.error("PostgresConnectionPool: error closing pool: %s", e)
        finally:
            self._pool = None

    def close(self):
        with self._lock:
            self._close_locked()

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "pool_exists": self._pool is not None,
                "failure_count": self._failures,
                "last_failure_time": self._last_failure,
                "in_backoff": self._cooling_down(),
            }


_connection_pool: Optional[PostgresConnectionPool] = None
_pool_lock = threading.Lock()


def get_connection_pool() -> PostgresConnectionPool:
    global _connection_pool
    with _pool_lock:
        if _connection_pool is None:
            _connection_pool = PostgresConnectionPool(DB_POOL_MIN, DB_POOL_MAX)
        return _connection_pool


def close_connection_pool():
    global _connection_pool
    with _pool_lock:
        if _connection_pool is not None:
            _connection_pool.close()
            _connection_pool = None
