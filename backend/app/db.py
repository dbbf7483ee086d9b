import os
import threading
from contextlib import contextmanager
from typing import Optional

from psycopg.rows import dict_row

# psycopg3 connection pooling lives in a separate package.
from psycopg_pool import ConnectionPool

from .config import settings

DATABASE_URL_ADMIN = os.getenv("DATABASE_URL_ADMIN") or os.getenv("DATABASE_URL") or "postgresql://localhost/pantrypal"
DATABASE_URL = os.getenv("APP_DATABASE_URL") or os.getenv("DATABASE_URL") or "postgresql://localhost/pantrypal"

def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default

# Pool sizing defaults are conservative for local/dev. Override in prod via env:
# - DB_POOL_MIN_SIZE / DB_POOL_MAX_SIZE
# - DB_ADMIN_POOL_MIN_SIZE / DB_ADMIN_POOL_MAX_SIZE
_POOL_MIN = _env_int("DB_POOL_MIN_SIZE", 1)
_POOL_MAX = _env_int("DB_POOL_MAX_SIZE", 10)
_ADMIN_POOL_MIN = _env_int("DB_ADMIN_POOL_MIN_SIZE", 1)
_ADMIN_POOL_MAX = _env_int("DB_ADMIN_POOL_MAX_SIZE", 5)

# Pools are opened on first use so importing the app (tests, scripts) never
# dials the database.
_pool: Optional[ConnectionPool] = None
_admin_pool: Optional[ConnectionPool] = None
_pool_lock = threading.Lock()


def _app_pool() -> ConnectionPool:
    global _pool
    with _pool_lock:
        if _pool is None:
            _pool = ConnectionPool(
                conninfo=DATABASE_URL,
                min_size=_POOL_MIN,
                max_size=_POOL_MAX,
                kwargs={"row_factory": dict_row},
                open=True,
            )
        return _pool


def _admin_pool_get() -> ConnectionPool:
    global _admin_pool
    with _pool_lock:
        if _admin_pool is None:
            _admin_pool = ConnectionPool(
                conninfo=DATABASE_URL_ADMIN,
                min_size=_ADMIN_POOL_MIN,
                max_size=_ADMIN_POOL_MAX,
                kwargs={"row_factory": dict_row},
                open=True,
            )
        return _admin_pool


@contextmanager
def _pooled_conn(pool: ConnectionPool):
    # `with get_conn() as conn:` commits on success, rolls back on exception
    # and returns the connection to the pool.
    with pool.connection() as conn:
        with conn:
            yield conn


def get_conn():
    return _pooled_conn(_app_pool())

def get_admin_conn():
    return _pooled_conn(_admin_pool_get())


def close_pools() -> None:
    global _pool, _admin_pool
    with _pool_lock:
        for pool in (_pool, _admin_pool):
            if pool is not None:
                pool.close()
        _pool = None
        _admin_pool = None


def set_org_context(conn, org_id: str):
    with conn.cursor() as cur:
        # `SET ... = %s` is not valid when using the extended query protocol (psycopg sends $1).
        # Use set_config() to safely parameterize the value.
        # set_config(name text, value text, is_local boolean)
        cur.execute(
            "SELECT set_config('app.current_org_id', %s::text, true)",
            (str(org_id),),
        )


def set_txn_timeouts(cur, statement_ms: Optional[int] = None, lock_ms: Optional[int] = None):
    # Transaction-local: a cancelled statement aborts the transaction, which then
    # rolls back as a whole.
    statement_ms = settings.txn_statement_timeout_ms if statement_ms is None else statement_ms
    lock_ms = settings.txn_lock_timeout_ms if lock_ms is None else lock_ms
    cur.execute(
        "SELECT set_config('statement_timeout', %s::text, true), set_config('lock_timeout', %s::text, true)",
        (f"{int(statement_ms)}ms", f"{int(lock_ms)}ms"),
    )
