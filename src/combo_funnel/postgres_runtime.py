"""Thread-local Postgres connections for stores addressed by a DSN locator."""

from __future__ import annotations

from contextlib import contextmanager
import logging
import threading
import time
from typing import Any, Iterator

import psycopg


logger = logging.getLogger("combo_funnel.postgres_runtime")
_LOCAL = threading.local()
_CONNECT_ATTEMPTS = 3
_CONNECT_BACKOFF_SECONDS = 0.05


def is_postgres_dsn(value: str | None) -> bool:
    text = str(value or "").strip()
    return text.startswith("postgres://") or text.startswith("postgresql://")


@contextmanager
def postgres_threadlocal_connection(dsn: str) -> Iterator[psycopg.Connection[Any]]:
    """Yield this thread's connection for `dsn`; commit on success, roll back on error."""
    conn = _connection_for(dsn)
    try:
        yield conn
    except BaseException:
        try:
            conn.rollback()
        except psycopg.Error:
            _discard(dsn)
        raise
    else:
        try:
            conn.commit()
        except psycopg.Error:
            _discard(dsn)
            raise
    if conn.closed or conn.broken:
        _discard(dsn)


def _pool() -> dict[str, psycopg.Connection[Any]]:
    pool = getattr(_LOCAL, "pool", None)
    if pool is None:
        pool = {}
        _LOCAL.pool = pool
    return pool


def _connection_for(dsn: str) -> psycopg.Connection[Any]:
    pool = _pool()
    cached = pool.get(dsn)
    if cached is not None and not (cached.closed or cached.broken):
        return cached
    if cached is not None:
        _discard(dsn)
    for attempt in range(1, _CONNECT_ATTEMPTS + 1):
        try:
            conn = psycopg.connect(dsn)
        except psycopg.OperationalError as exc:
            logger.warning("Postgres connect attempt %s/%s failed: %s", attempt, _CONNECT_ATTEMPTS, str(exc)[:256])
            if attempt == _CONNECT_ATTEMPTS:
                raise
            time.sleep(_CONNECT_BACKOFF_SECONDS * (2 ** (attempt - 1)))
            continue
        pool[dsn] = conn
        return conn
    raise psycopg.OperationalError("postgres connection attempt failed")


def _discard(dsn: str) -> None:
    conn = _pool().pop(dsn, None)
    if conn is None:
        return
    try:
        conn.close()
    except psycopg.Error:
        logger.debug("Ignoring error while closing dropped Postgres connection")
