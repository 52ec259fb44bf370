"""
PostgreSQL pool backing the State Store.

One small ThreadedConnectionPool per process. The daemon reconciles in an
executor thread while the CLI and the health endpoint read from others, and
the global sync lock keeps writers to one run at a time.

Every State Store call is a single short transaction::

    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute("SELECT 1")

Clean exit commits, an exception rolls back. A connection whose server went
away is closed instead of being handed back, so a long-running daemon
recovers from a PostgreSQL restart on its next run.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager

import psycopg2
import psycopg2.pool

from vaultkube.config import DatabaseConfig, get_config

logger = logging.getLogger(__name__)

POOL_MIN = 1
POOL_MAX = 4

_pool: psycopg2.pool.ThreadedConnectionPool | None = None
_pool_lock = threading.Lock()


def _open_pool(cfg: DatabaseConfig) -> psycopg2.pool.ThreadedConnectionPool:
    logger.info("Opening State Store pool: %s (max=%d)", cfg.location, POOL_MAX)
    try:
        return psycopg2.pool.ThreadedConnectionPool(POOL_MIN, POOL_MAX, **cfg.connect_kwargs)
    except psycopg2.OperationalError as e:
        raise ConnectionError(
            f"Cannot connect to PostgreSQL at {cfg.location}: {e}\n"
            f"Check VAULTKUBE_DB_* environment variables and run `vaultkube migrate`."
        ) from e


def get_pool() -> psycopg2.pool.ThreadedConnectionPool:
    global _pool
    with _pool_lock:
        if _pool is None or _pool.closed:
            _pool = _open_pool(get_config().db)
        return _pool


@contextmanager
def get_connection() -> Iterator[psycopg2.extensions.connection]:
    """Borrow a pooled connection for one transaction."""
    pool = get_pool()
    try:
        conn = pool.getconn()
    except psycopg2.pool.PoolError as e:
        raise ConnectionError(f"State Store pool unavailable: {e}") from e

    discard = False
    try:
        yield conn
        conn.commit()
    except psycopg2.OperationalError:
        discard = True
        logger.warning("Dropping State Store connection after a server error")
        raise
    except Exception:
        conn.rollback()
        raise
    finally:
        pool.putconn(conn, close=discard or bool(conn.closed))


def close_pool() -> None:
    """Close every pooled connection. The next get_connection() reopens."""
    global _pool
    with _pool_lock:
        if _pool is not None:
            _pool.closeall()
            _pool = None
