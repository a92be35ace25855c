"""In-memory store for local runs and the harness's own tests.

Tables are dicts keyed by primary key, guarded by one lock because the
system under test writes from its worker threads while the harness purges
from the driver thread. Primary keys and parent references are enforced
so purge ordering mistakes surface here exactly as they would against a
relational backend.
"""

from __future__ import annotations

import copy
import threading
from typing import Any, Mapping

from ..errors import StoreConflictError, StoreError, StoreIntegrityError
from .filters import Filters, matches, normalize_filters, parse_order
from .schema import StoreSchema, TableSpec


class InMemoryStore:
    """Dict-backed store satisfying ``NamespacedStore``."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._specs: dict[str, TableSpec] = {}
        self._rows: dict[str, dict[Any, dict[str, Any]]] = {}

    def create_table(self, spec: TableSpec) -> None:
        with self._lock:
            if spec.name not in self._specs:
                self._specs[spec.name] = spec
                self._rows[spec.name] = {}

    def ensure_schema(self, schema: StoreSchema) -> None:
        for spec in schema:
            self.create_table(spec)

    def tables(self) -> list[str]:
        with self._lock:
            return list(self._specs)

    def _spec(self, table: str) -> TableSpec:
        try:
            return self._specs[table]
        except KeyError:
            raise StoreError(table=table, message="unknown table") from None

    def _check_parents(self, spec: TableSpec, row: Mapping[str, Any]) -> None:
        for column, parent in spec.references:
            value = row.get(column)
            if value is not None and value not in self._rows.get(parent, {}):
                raise StoreIntegrityError(
                    table=spec.name,
                    message=f"{column}={value!r} has no row in {parent}",
                )

    def _check_children(self, spec: TableSpec, keys: set[Any]) -> None:
        for child in self._specs.values():
            for column, parent in child.references:
                if parent != spec.name:
                    continue
                for row in self._rows[child.name].values():
                    if row.get(column) in keys and not (
                        child.name == spec.name and row[spec.key] in keys
                    ):
                        raise StoreIntegrityError(
                            table=spec.name,
                            message=f"still referenced by {child.name}.{column}",
                            detail=str(row.get(column)),
                        )

    def insert(self, table: str, row: Mapping[str, Any]) -> dict[str, Any]:
        with self._lock:
            spec = self._spec(table)
            unknown = set(row) - set(spec.columns)
            if unknown:
                raise StoreError(
                    table=table, message=f"unknown columns {sorted(unknown)}",
                )
            key = row.get(spec.key)
            if key is None:
                raise StoreError(table=table, message=f"missing key {spec.key!r}")
            if key in self._rows[table]:
                raise StoreConflictError(
                    table=table, message="duplicate key", detail=str(key),
                )
            self._check_parents(spec, row)
            stored = {column: row.get(column) for column in spec.columns}
            self._rows[table][key] = stored
            return copy.deepcopy(stored)

    def select(
        self,
        table: str,
        filters: Filters | None = None,
        *,
        order: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        conditions = normalize_filters(filters)
        with self._lock:
            self._spec(table)
            rows = [
                copy.deepcopy(r) for r in self._rows[table].values()
                if matches(r, conditions)
            ]
        ordering = parse_order(order)
        if ordering is not None:
            column, descending = ordering
            rows.sort(
                key=lambda r: (r.get(column) is None, r.get(column)),
                reverse=descending,
            )
        if limit is not None:
            rows = rows[:limit]
        return rows

    def update(
        self, table: str, filters: Filters, data: Mapping[str, Any],
    ) -> list[dict[str, Any]]:
        conditions = normalize_filters(filters)
        with self._lock:
            spec = self._spec(table)
            if spec.key in data:
                raise StoreError(table=table, message="cannot update key column")
            updated = []
            for row in self._rows[table].values():
                if matches(row, conditions):
                    self._check_parents(spec, {**row, **data})
                    row.update({k: v for k, v in data.items() if k in spec.columns})
                    updated.append(copy.deepcopy(row))
            return updated

    def delete(self, table: str, filters: Filters) -> int:
        conditions = normalize_filters(filters)
        with self._lock:
            spec = self._spec(table)
            doomed = {
                key for key, row in self._rows[table].items()
                if matches(row, conditions)
            }
            if not doomed:
                return 0
            self._check_children(spec, doomed)
            for key in doomed:
                del self._rows[table][key]
            return len(doomed)

    def count(self, table: str, filters: Filters | None = None) -> int:
        conditions = normalize_filters(filters)
        with self._lock:
            self._spec(table)
            return sum(1 for r in self._rows[table].values() if matches(r, conditions))

    def close(self) -> None:
        """Nothing to release."""
