"""Capability contracts consumed from the system under test and the store.

The harness never reaches into a system's internals. It needs exactly three
things from the system (accept inbound traffic, report outbound effects,
answer state queries) and raw namespace-scoped access to the store the
system writes to. Anything satisfying these protocols can be driven.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Protocol, Sequence, runtime_checkable

from .store.filters import Filters
from .store.schema import StoreSchema, TableSpec

EffectCallback = Callable[[Any], Any]


@dataclass(frozen=True, slots=True)
class StateSnapshot:
    """What the system itself would use to decide about one subject."""

    subject_id: str
    session: Mapping[str, Any] = field(default_factory=dict)
    history: Sequence[Mapping[str, Any]] = ()
    flags: Mapping[str, bool] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "subject_id": self.subject_id,
            "session": dict(self.session),
            "history": [dict(h) for h in self.history],
            "flags": dict(self.flags),
        }


@runtime_checkable
class SystemUnderTest(Protocol):
    """Entry points the harness drives."""

    def handle_inbound_request(self, raw_payload: Any) -> None: ...
    def on_outbound_effect(self, callback: EffectCallback) -> None: ...
    def query_state(self, subject_id: str) -> StateSnapshot | None: ...


@runtime_checkable
class NamespacedStore(Protocol):
    """Raw store access used by isolation and by the system under test.

    Filters are mappings of ``column -> (op, value)`` or ``column -> value``
    (equality). Supported ops: ``eq``, ``neq``, ``gt``, ``lt``, ``in``,
    ``is`` and ``prefix``.
    """

    def create_table(self, spec: TableSpec) -> None: ...
    def ensure_schema(self, schema: StoreSchema) -> None: ...
    def tables(self) -> list[str]: ...
    def insert(self, table: str, row: Mapping[str, Any]) -> dict[str, Any]: ...
    def select(
        self,
        table: str,
        filters: Filters | None = None,
        *,
        order: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]: ...
    def update(
        self, table: str, filters: Filters, data: Mapping[str, Any],
    ) -> list[dict[str, Any]]: ...
    def delete(self, table: str, filters: Filters) -> int: ...
    def count(self, table: str, filters: Filters | None = None) -> int: ...
    def close(self) -> None: ...
