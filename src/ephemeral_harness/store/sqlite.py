"""SQLite store backend.

One connection shared across threads, serialized by a lock. Foreign keys
are switched on, so deleting a parent before its children fails the same
way it would on a server-grade database.
"""

from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Mapping

from ..errors import StoreConflictError, StoreError, StoreIntegrityError
from .filters import Condition, Filters, normalize_filters, parse_order
from .schema import StoreSchema, TableSpec


def _quote(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


def _where(conditions: tuple[Condition, ...]) -> tuple[str, list[Any]]:
    clauses: list[str] = []
    params: list[Any] = []
    for cond in conditions:
        col = _quote(cond.column)
        if cond.op == "eq":
            clauses.append(f"{col} = ?")
            params.append(cond.value)
        elif cond.op == "neq":
            clauses.append(f"{col} != ?")
            params.append(cond.value)
        elif cond.op == "gt":
            clauses.append(f"{col} > ?")
            params.append(cond.value)
        elif cond.op == "lt":
            clauses.append(f"{col} < ?")
            params.append(cond.value)
        elif cond.op == "in":
            if not cond.value:
                clauses.append("0")
                continue
            clauses.append(f"{col} IN ({', '.join('?' for _ in cond.value)})")
            params.extend(cond.value)
        elif cond.op == "is":
            clauses.append(f"{col} IS ?")
            params.append(cond.value)
        else:  # prefix; substr keeps it case-sensitive, unlike LIKE
            clauses.append(f"substr({col}, 1, ?) = ?")
            params.extend([len(cond.value), cond.value])
    if not clauses:
        return "", params
    return " WHERE " + " AND ".join(clauses), params


class SqliteStore:
    """sqlite3-backed store satisfying ``NamespacedStore``."""

    def __init__(self, path: str | Path = ":memory:") -> None:
        self.path = str(path)
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(
            self.path, check_same_thread=False, isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._lock = threading.RLock()

    @contextmanager
    def _cursor(self, table: str) -> Iterator[sqlite3.Cursor]:
        with self._lock:
            cur: sqlite3.Cursor | None = None
            try:
                cur = self._conn.cursor()
                yield cur
            except sqlite3.IntegrityError as exc:
                message = str(exc)
                if "UNIQUE" in message or "PRIMARY KEY" in message:
                    raise StoreConflictError(
                        table=table, message="duplicate key", detail=message,
                    ) from exc
                raise StoreIntegrityError(
                    table=table, message="reference violation", detail=message,
                ) from exc
            except sqlite3.Error as exc:
                # Closed connections, bad SQL, locked or corrupt files.
                raise StoreError(
                    table=table, message=str(exc), detail=type(exc).__name__,
                ) from exc
            finally:
                if cur is not None:
                    cur.close()

    def create_table(self, spec: TableSpec) -> None:
        columns = []
        for column in spec.columns:
            suffix = " PRIMARY KEY" if column == spec.key else ""
            columns.append(f"{_quote(column)}{suffix}")
        for column, parent in spec.references:
            columns.append(
                f"FOREIGN KEY ({_quote(column)}) REFERENCES {_quote(parent)}"
            )
        ddl = f"CREATE TABLE IF NOT EXISTS {_quote(spec.name)} ({', '.join(columns)})"
        with self._cursor(spec.name) as cur:
            cur.execute(ddl)

    def ensure_schema(self, schema: StoreSchema) -> None:
        for spec in schema:
            self.create_table(spec)

    def tables(self) -> list[str]:
        with self._cursor("sqlite_master") as cur:
            cur.execute(
                "SELECT name FROM sqlite_master "
                "WHERE type = 'table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
            )
            return [row[0] for row in cur.fetchall()]

    def insert(self, table: str, row: Mapping[str, Any]) -> dict[str, Any]:
        if not row:
            raise StoreError(table=table, message="empty row")
        names = list(row)
        sql = (
            f"INSERT INTO {_quote(table)} ({', '.join(_quote(n) for n in names)}) "
            f"VALUES ({', '.join('?' for _ in names)})"
        )
        with self._cursor(table) as cur:
            cur.execute(sql, [row[n] for n in names])
        return dict(row)

    def select(
        self,
        table: str,
        filters: Filters | None = None,
        *,
        order: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        where, params = _where(normalize_filters(filters))
        sql = f"SELECT * FROM {_quote(table)}{where}"
        ordering = parse_order(order)
        if ordering is not None:
            column, descending = ordering
            sql += f" ORDER BY {_quote(column)} {'DESC' if descending else 'ASC'}"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        with self._cursor(table) as cur:
            cur.execute(sql, params)
            return [dict(r) for r in cur.fetchall()]

    def update(
        self, table: str, filters: Filters, data: Mapping[str, Any],
    ) -> list[dict[str, Any]]:
        if not data:
            return self.select(table, filters)
        where, params = _where(normalize_filters(filters))
        assignments = ", ".join(f"{_quote(k)} = ?" for k in data)
        with self._lock:
            with self._cursor(table) as cur:
                cur.execute(
                    f"UPDATE {_quote(table)} SET {assignments}{where}",
                    [*data.values(), *params],
                )
            return self.select(table, filters)

    def delete(self, table: str, filters: Filters) -> int:
        where, params = _where(normalize_filters(filters))
        with self._cursor(table) as cur:
            cur.execute(f"DELETE FROM {_quote(table)}{where}", params)
            return cur.rowcount

    def count(self, table: str, filters: Filters | None = None) -> int:
        where, params = _where(normalize_filters(filters))
        with self._cursor(table) as cur:
            cur.execute(f"SELECT COUNT(*) FROM {_quote(table)}{where}", params)
            return int(cur.fetchone()[0])

    def close(self) -> None:
        with self._lock:
            self._conn.close()
