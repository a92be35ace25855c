"""Declared store layout: tables, keys, namespace columns and dependencies.

Purge correctness hinges on two facts declared here: which column carries
the namespace marker in each table, and which tables reference which. The
dependency order is derived, never hand-maintained.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from graphlib import CycleError, TopologicalSorter

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class SchemaError(ValueError):
    """Raised for an inconsistent store schema."""


@dataclass(frozen=True, slots=True)
class TableSpec:
    """One table.

    Attributes:
        name: Table name.
        columns: All column names, key included.
        key: Primary key column.
        namespace_column: Column whose value starts with the namespace prefix
            for every test-owned row.
        references: ``(column, parent_table)`` pairs; ``column`` holds the
            parent's key.
    """

    name: str
    columns: tuple[str, ...]
    key: str = "id"
    namespace_column: str = "id"
    references: tuple[tuple[str, str], ...] = ()

    def __post_init__(self) -> None:
        for ident in (self.name, *self.columns):
            if not _IDENTIFIER.match(ident):
                raise SchemaError(f"invalid identifier {ident!r}")
        for required in (self.key, self.namespace_column):
            if required not in self.columns:
                raise SchemaError(
                    f"{self.name}: column {required!r} not declared in columns"
                )
        for column, _parent in self.references:
            if column not in self.columns:
                raise SchemaError(
                    f"{self.name}: reference column {column!r} not declared"
                )

    @property
    def parents(self) -> tuple[str, ...]:
        return tuple(parent for _column, parent in self.references)


class StoreSchema:
    """Set of tables with a derived parent-before-child order."""

    def __init__(self, tables: list[TableSpec] | tuple[TableSpec, ...]) -> None:
        self._tables: dict[str, TableSpec] = {}
        for spec in tables:
            if spec.name in self._tables:
                raise SchemaError(f"duplicate table {spec.name!r}")
            self._tables[spec.name] = spec

        for spec in self._tables.values():
            for parent in spec.parents:
                if parent not in self._tables:
                    raise SchemaError(
                        f"{spec.name}: references undeclared table {parent!r}"
                    )

        sorter: TopologicalSorter[str] = TopologicalSorter()
        for spec in self._tables.values():
            sorter.add(spec.name, *(p for p in spec.parents if p != spec.name))
        try:
            self._order = tuple(sorter.static_order())
        except CycleError as exc:
            raise SchemaError(f"dependency cycle: {exc.args[1]}") from exc

    def __contains__(self, name: object) -> bool:
        return name in self._tables

    def __iter__(self):
        return (self._tables[name] for name in self._order)

    def __len__(self) -> int:
        return len(self._tables)

    def table(self, name: str) -> TableSpec:
        try:
            return self._tables[name]
        except KeyError:
            raise SchemaError(f"unknown table {name!r}") from None

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(self._tables)

    @property
    def dependency_order(self) -> tuple[str, ...]:
        """Parents before children; the order for inserts."""
        return self._order

    @property
    def purge_order(self) -> tuple[str, ...]:
        """Children before parents; the order for deletes."""
        return tuple(reversed(self._order))
