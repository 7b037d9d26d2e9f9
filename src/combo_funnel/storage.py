"""SQLite/Postgres backend helpers shared by the funnel stores."""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
import re
import sqlite3
from typing import Any, Iterator, Sequence

from .postgres_runtime import is_postgres_dsn, postgres_threadlocal_connection


_PLACEHOLDER_PATTERN = re.compile(r"\{p(\d+)\}")
_SQLITE_TIMEOUT_SECONDS = 30.0


class SqlStore:
    """Base for stores addressed by a locator: a sqlite path or a postgres DSN."""

    def __init__(self, *, locator: str | Path) -> None:
        self.locator = str(locator or "").strip()
        if not self.locator:
            raise ValueError("store locator is required")
        self.backend = "postgres" if is_postgres_dsn(self.locator) else "sqlite"
        if self.backend == "sqlite":
            sqlite_path = Path(_sqlite_path(self.locator))
            sqlite_path.parent.mkdir(parents=True, exist_ok=True)
            sqlite3.connect(sqlite_path).close()
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        raise NotImplementedError

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        if self.backend == "postgres":
            with postgres_threadlocal_connection(self.locator) as conn:
                yield conn
            return
        conn = sqlite3.connect(_sqlite_path(self.locator), timeout=_SQLITE_TIMEOUT_SECONDS)
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _execute_ddl(self, *statements: str) -> None:
        with self._connect() as conn:
            for statement in statements:
                conn.execute(_sql(statement, self.backend))

    def _sql_with_params(self, sql: str, params: tuple[Any, ...]) -> tuple[str, tuple[Any, ...]]:
        rendered = _sql(sql, self.backend)
        ordered = _ordered_params(sql, params)
        return rendered, ordered

    def _in_clause(self, values: Sequence[Any], *, start: int) -> tuple[str, tuple[Any, ...]]:
        """Render `({pN}, {pN+1}, ...)` for an IN filter starting at placeholder `start`."""
        if not values:
            raise ValueError("IN clause requires at least one value")
        tokens = ", ".join(f"{{p{start + idx}}}" for idx in range(len(values)))
        return f"({tokens})", tuple(values)


def _sql(sql: str, backend: str) -> str:
    if backend == "sqlite":
        return _PLACEHOLDER_PATTERN.sub("?", sql)
    if backend == "postgres":
        return _PLACEHOLDER_PATTERN.sub("%s", sql)
    raise ValueError(f"unsupported backend: {backend}")


def _ordered_params(sql: str, params: tuple[Any, ...]) -> tuple[Any, ...]:
    if not params:
        return tuple()
    ordered: list[Any] = []
    for token in _PLACEHOLDER_PATTERN.findall(sql):
        idx = int(token) - 1
        if idx < 0 or idx >= len(params):
            raise ValueError(f"placeholder index out of range: p{token}")
        ordered.append(params[idx])
    return tuple(ordered)


def _sqlite_path(locator: str) -> str:
    text = str(locator or "").strip()
    if text.startswith("sqlite:///"):
        return text[len("sqlite:///") :]
    if text.startswith("sqlite://"):
        return text[len("sqlite://") :]
    return text


def chunked(values: Sequence[Any], size: int) -> Iterator[Sequence[Any]]:
    if size < 1:
        raise ValueError("chunk size must be >= 1")
    for start in range(0, len(values), size):
        yield values[start : start + size]


def utc_now() -> str:
    return datetime.now(tz=timezone.utc).isoformat()
