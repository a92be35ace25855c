"""Backing-store access for isolation and for systems under test."""

from __future__ import annotations

from .filters import Filters
from .memory import InMemoryStore
from .schema import SchemaError, StoreSchema, TableSpec
from .sqlite import SqliteStore


def open_store(url: str, schema: StoreSchema | None = None) -> InMemoryStore | SqliteStore:
    """Open a store from a ``memory://`` or ``sqlite:///path`` URL.

    When ``schema`` is given its tables are created if missing.
    """
    if url == "memory://":
        store: InMemoryStore | SqliteStore = InMemoryStore()
    elif url.startswith("sqlite:///"):
        store = SqliteStore(url[len("sqlite:///"):] or ":memory:")
    else:
        raise ValueError(f"unsupported store url {url!r}")
    if schema is not None:
        store.ensure_schema(schema)
    return store


__all__ = [
    'Filters',
    'InMemoryStore',
    'SchemaError',
    'SqliteStore',
    'StoreSchema',
    'TableSpec',
    'open_store',
]
