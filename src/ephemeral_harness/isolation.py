"""Namespace-scoped data isolation: purge and seed the shared store.

Isolation works by value-space partitioning, not by giving each test its own
database: every test-owned row carries the namespace prefix in its table's
namespace column, so "reset" means "delete every row that matches the
prefix, children first, then insert the declared fixtures, parents first".

This only holds if every table the system under test writes to is declared
in the schema. ``uncovered_tables`` and ``leaked_records`` exist to catch
the two ways that can go wrong.

Usage::

    isolation = DataIsolationManager(store, schema, namespace)
    isolation.purge()
    isolation.seed(fixtures)
    ...
    isolation.assert_clean()
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterator, Mapping

from .errors import (
    PurgeFailure,
    SeedFailure,
    StoreConflictError,
    StoreError,
)
from .namespace import TestNamespace
from .observability import get_logger
from .protocols import NamespacedStore
from .store.schema import StoreSchema

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class PurgeReport:
    """Rows deleted per table, in the order tables were visited."""

    deleted: tuple[tuple[str, int], ...] = ()

    @property
    def total(self) -> int:
        return sum(count for _table, count in self.deleted)

    def as_dict(self) -> dict[str, int]:
        return dict(self.deleted)


@dataclass(frozen=True)
class FixtureSet:
    """Declared rows to insert after a purge, keyed by table name."""

    rows: Mapping[str, tuple[Mapping[str, Any], ...]] = field(default_factory=dict)

    @classmethod
    def empty(cls) -> FixtureSet:
        return cls({})

    @classmethod
    def qualified(
        cls,
        namespace: TestNamespace,
        schema: StoreSchema,
        data: Mapping[str, list[Mapping[str, Any]]],
    ) -> FixtureSet:
        """Build fixtures from local ids, prefixing keys and references.

        ``{"subjects": [{"id": "S1"}]}`` becomes a row with id
        ``<prefix>S1``; reference columns pointing at other tables are
        qualified the same way.
        """
        rows: dict[str, tuple[Mapping[str, Any], ...]] = {}
        for table, table_rows in data.items():
            spec = schema.table(table)
            id_columns = {spec.key, spec.namespace_column}
            id_columns.update(column for column, _parent in spec.references)
            qualified_rows = []
            for row in table_rows:
                out = dict(row)
                for column in id_columns:
                    value = out.get(column)
                    if isinstance(value, str):
                        out[column] = namespace.qualify(value)
                qualified_rows.append(out)
            rows[table] = tuple(qualified_rows)
        return cls(rows)

    def __iter__(self) -> Iterator[str]:
        return iter(self.rows)

    def __len__(self) -> int:
        return sum(len(r) for r in self.rows.values())


class DataIsolationManager:
    """Purges and seeds namespace-owned records in a shared store.

    Args:
        store: Backing store shared with the system under test.
        schema: Every table the system writes to, with dependencies.
        namespace: The suite's namespace. Fixed for the manager's lifetime.
    """

    def __init__(
        self,
        store: NamespacedStore,
        schema: StoreSchema,
        namespace: TestNamespace,
    ) -> None:
        self._store = store
        self._schema = schema
        self._namespace = namespace
        self._purged = False

    @property
    def namespace(self) -> TestNamespace:
        return self._namespace

    @property
    def schema(self) -> StoreSchema:
        return self._schema

    # ── Purge ──────────────────────────────────────────────────────

    def purge(self) -> PurgeReport:
        """Delete every namespace row, children before parents.

        Idempotent: a second call deletes nothing and does not raise.

        Raises:
            PurgeFailure: If the store rejects a delete.
        """
        deleted: list[tuple[str, int]] = []
        for table in self._schema.purge_order:
            spec = self._schema.table(table)
            try:
                count = self._store.delete(
                    table, self._namespace.filter_for(spec.namespace_column),
                )
            except Exception as exc:
                logger.error("purge_failed", table=table, error=str(exc))
                raise PurgeFailure(
                    f"purge of {table} failed: {exc}", table=table,
                ) from exc
            deleted.append((table, count))

        self._purged = True
        report = PurgeReport(tuple(deleted))
        logger.info(
            "purge_completed",
            namespace=self._namespace.prefix,
            deleted=report.as_dict(),
        )
        return report

    def leaked_records(self) -> dict[str, int]:
        """Namespace rows still present, per table (only non-zero entries)."""
        leaked: dict[str, int] = {}
        for table in self._schema.dependency_order:
            spec = self._schema.table(table)
            count = self._store.count(
                table, self._namespace.filter_for(spec.namespace_column),
            )
            if count:
                leaked[table] = count
        return leaked

    def assert_clean(self) -> None:
        """Raise ``PurgeFailure`` if any namespace row survived."""
        leaked = self.leaked_records()
        if leaked:
            raise PurgeFailure(f"namespace rows survived purge: {leaked}")

    def uncovered_tables(self) -> list[str]:
        """Store tables the schema does not declare.

        Rows in such tables are invisible to ``purge``.
        """
        return [t for t in self._store.tables() if t not in self._schema]

    # ── Seed ───────────────────────────────────────────────────────

    def seed(self, fixtures: FixtureSet) -> int:
        """Insert ``fixtures`` in dependency order. Returns rows inserted.

        Raises:
            SeedFailure: If no purge preceded this seed, if a row lies
                outside the namespace, or if a row collides with an existing
                one (which means an upstream purge missed it).
        """
        if not self._purged:
            raise SeedFailure("seed requires a preceding purge")

        unknown = [t for t in fixtures if t not in self._schema]
        if unknown:
            raise SeedFailure(f"fixtures reference undeclared tables: {unknown}")

        inserted = 0
        for table in self._schema.dependency_order:
            spec = self._schema.table(table)
            for row in fixtures.rows.get(table, ()):
                marker = row.get(spec.namespace_column)
                if not self._namespace.matches(marker):
                    raise SeedFailure(
                        f"{table} fixture {spec.namespace_column}={marker!r} "
                        f"is outside namespace {self._namespace.prefix!r}",
                        table=table,
                    )
                try:
                    self._store.insert(table, row)
                except StoreConflictError as exc:
                    logger.error("seed_collision", table=table, key=row.get(spec.key))
                    raise SeedFailure(
                        f"{table} fixture {row.get(spec.key)!r} collides with an "
                        "existing record; purge did not cover it",
                        table=table,
                    ) from exc
                except StoreError as exc:
                    raise SeedFailure(
                        f"{table} fixture insert failed: {exc}", table=table,
                    ) from exc
                inserted += 1

        # The next seed needs a fresh purge.
        self._purged = False
        logger.info("seed_completed", namespace=self._namespace.prefix, rows=inserted)
        return inserted

    def reset(self, fixtures: FixtureSet) -> PurgeReport:
        """Purge then seed; the per-test reset."""
        report = self.purge()
        self.seed(fixtures)
        return report

    # ── Targeted reset ─────────────────────────────────────────────

    def reset_subject(self, subject_id: str) -> PurgeReport:
        """Delete every row whose namespace column equals ``subject_id``.

        Raises:
            NamespaceViolation: If ``subject_id`` is outside the namespace.
            PurgeFailure: If the store rejects a delete.
        """
        self._namespace.require(subject_id)
        deleted: list[tuple[str, int]] = []
        for table in self._schema.purge_order:
            spec = self._schema.table(table)
            try:
                count = self._store.delete(table, {spec.namespace_column: subject_id})
            except Exception as exc:
                raise PurgeFailure(
                    f"reset of {subject_id} in {table} failed: {exc}", table=table,
                ) from exc
            deleted.append((table, count))
        report = PurgeReport(tuple(deleted))
        logger.info("subject_reset", subject_id=subject_id, deleted=report.total)
        return report


__all__ = [
    'DataIsolationManager',
    'FixtureSet',
    'PurgeReport',
]
