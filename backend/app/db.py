from psycopg.rows import dict_row
from contextlib import contextmanager

# psycopg3 connection pooling lives in a separate package.
from psycopg_pool import ConnectionPool

from .config import settings

# The pool opens lazily so importing the app (tests, scripts) never needs a live database.
# Note: we keep row_factory=dict_row; every query in the core reads rows by column name.
_pool = ConnectionPool(
    conninfo=settings.db_url,
    min_size=settings.db_pool_min_size,
    max_size=settings.db_pool_max_size,
    kwargs={"row_factory": dict_row},
    open=False,
)


def _ensure_open(pool: ConnectionPool) -> None:
    if pool.closed:
        pool.open()


@contextmanager
def _pooled_conn(pool: ConnectionPool):
    # `with get_conn() as conn:`
    # - commit on success
    # - rollback on exception
    # - return connection to pool
    _ensure_open(pool)
    with pool.connection() as conn:
        with conn:
            yield conn


def get_conn():
    return _pooled_conn(_pool)


def close_pools() -> None:
    # Best-effort shutdown hook (e.g. uvicorn shutdown).
    if not _pool.closed:
        _pool.close()
