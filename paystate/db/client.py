from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

import psycopg2
from psycopg2.pool import SimpleConnectionPool

from paystate.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

_pool: SimpleConnectionPool | None = None
_schema: str = ""


def init_pool(cfg: Settings = default_settings) -> None:
    global _pool, _schema
    if _pool is not None or not cfg.db_enabled:
        return
    dsn = cfg.db_dsn.replace("postgresql+psycopg2://", "postgresql://")
    _pool = SimpleConnectionPool(1, 5, dsn=dsn)
    _schema = cfg.db_schema
    logger.info("state snapshot pool ready", extra={"event": cfg.db_host})


def close_pool() -> None:
    global _pool
    if _pool is not None:
        _pool.closeall()
        _pool = None


def pool_ready() -> bool:
    return _pool is not None


@contextmanager
def get_conn() -> Iterator[psycopg2.extensions.connection | None]:
    """Yield a pooled connection, or None when no database is configured."""
    if _pool is None:
        init_pool()
    if _pool is None:
        yield None
        return
    conn = _pool.getconn()
    try:
        if _schema:
            with conn.cursor() as cur:
                cur.execute(f"SET search_path TO {_schema}")
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        _pool.putconn(conn)
