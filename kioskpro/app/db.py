import threading
from contextlib import contextmanager
from typing import Optional

from fastapi import HTTPException
from psycopg.rows import dict_row

# psycopg3 connection pooling lives in a separate package.
from psycopg_pool import ConnectionPool

from .config import settings

_pool: Optional[ConnectionPool] = None
_pool_lock = threading.Lock()


def db_configured() -> bool:
    return bool(settings.db_url)


def _get_pool() -> ConnectionPool:
    global _pool
    if _pool is not None:
        return _pool
    if not db_configured():
        raise HTTPException(status_code=503, detail="database not configured")
    with _pool_lock:
        if _pool is None:
            # row_factory=dict_row: handlers index rows by column name.
            _pool = ConnectionPool(
                conninfo=settings.db_url,
                min_size=settings.db_pool_min,
                max_size=settings.db_pool_max,
                kwargs={"row_factory": dict_row},
                open=True,
            )
    return _pool


@contextmanager
def _pooled_conn(pool: ConnectionPool):
    # pool.connection() commits on success, rolls back on exception and hands
    # the connection back to the pool (an inner `with conn:` would close it).
    with pool.connection() as conn:
        yield conn


def get_conn():
    return _pooled_conn(_get_pool())


def close_pool() -> None:
    global _pool
    with _pool_lock:
        pool, _pool = _pool, None
    if pool is not None:
        pool.close()
