"""Tests shared by the in-memory and SQLite store backends.

The ``store`` fixture runs each test against both backends.
"""

from __future__ import annotations

import pytest

from ephemeral_harness.errors import StoreConflictError, StoreError, StoreIntegrityError
from ephemeral_harness.protocols import NamespacedStore
from ephemeral_harness.store import InMemoryStore, SqliteStore, open_store
from ephemeral_harness.store.schema import StoreSchema, TableSpec


def _seed(store):
    store.insert('accounts', {'id': 'itest-unit-a', 'label': 'A'})
    store.insert('accounts', {'id': 'itest-unit-b', 'label': 'B'})
    store.insert('accounts', {'id': 'prod-1', 'label': 'P'})
    store.insert('orders', {'id': 'o1', 'account_id': 'itest-unit-a', 'total': 10})
    store.insert('orders', {'id': 'o2', 'account_id': 'itest-unit-a', 'total': 30})
    store.insert('orders', {'id': 'o3', 'account_id': 'prod-1', 'total': 20})


# =====================================================================
# 1. Protocol and tables
# =====================================================================


class TestShape:

    def test_satisfies_protocol(self, store):
        assert isinstance(store, NamespacedStore)

    def test_tables(self, store):
        assert store.tables() == ['accounts', 'orders']

    def test_ensure_schema_is_repeatable(self, store, small_schema):
        store.ensure_schema(small_schema)
        assert store.tables() == ['accounts', 'orders']


# =====================================================================
# 2. CRUD
# =====================================================================


class TestCrud:

    def test_insert_and_select(self, store):
        _seed(store)
        rows = store.select('accounts', {'id': 'itest-unit-a'})
        assert rows == [{'id': 'itest-unit-a', 'label': 'A'}]

    def test_select_operators(self, store):
        _seed(store)
        assert {r['id'] for r in store.select('orders', {'total': ('gt', 15)})} == {'o2', 'o3'}
        assert {r['id'] for r in store.select('orders', {'total': ('lt', 15)})} == {'o1'}
        assert {r['id'] for r in store.select('orders', {'id': ('in', ['o1', 'o3'])})} == {'o1', 'o3'}
        assert {r['id'] for r in store.select('orders', {'id': ('neq', 'o1')})} == {'o2', 'o3'}

    def test_prefix_filter_is_case_sensitive(self, store):
        _seed(store)
        store.insert('accounts', {'id': 'ITEST-UNIT-c', 'label': 'upper'})
        ids = {r['id'] for r in store.select('accounts', {'id': ('prefix', 'itest-unit-')})}
        assert ids == {'itest-unit-a', 'itest-unit-b'}

    def test_prefix_filter_treats_wildcards_literally(self, store):
        store.insert('accounts', {'id': 'itest_unit-x', 'label': 'underscore'})
        store.insert('accounts', {'id': 'itest%unit-y', 'label': 'percent'})
        assert store.count('accounts', {'id': ('prefix', 'itest_')}) == 1

    def test_order_and_limit(self, store):
        _seed(store)
        rows = store.select('orders', order='total.desc', limit=2)
        assert [r['id'] for r in rows] == ['o2', 'o3']

    def test_update(self, store):
        _seed(store)
        updated = store.update('accounts', {'id': 'itest-unit-a'}, {'label': 'AA'})
        assert len(updated) == 1
        assert store.select('accounts', {'id': 'itest-unit-a'})[0]['label'] == 'AA'

    def test_delete_returns_count(self, store):
        _seed(store)
        assert store.delete('orders', {'account_id': 'itest-unit-a'}) == 2
        assert store.delete('orders', {'account_id': 'itest-unit-a'}) == 0

    def test_count(self, store):
        _seed(store)
        assert store.count('accounts') == 3
        assert store.count('accounts', {'id': ('prefix', 'itest-unit-')}) == 2


# =====================================================================
# 3. Constraints
# =====================================================================


class TestConstraints:

    def test_duplicate_key_conflicts(self, store):
        store.insert('accounts', {'id': 'a', 'label': 'x'})
        with pytest.raises(StoreConflictError):
            store.insert('accounts', {'id': 'a', 'label': 'y'})

    def test_child_requires_parent(self, store):
        with pytest.raises(StoreIntegrityError):
            store.insert('orders', {'id': 'o9', 'account_id': 'ghost', 'total': 1})

    def test_parent_delete_blocked_by_children(self, store):
        _seed(store)
        with pytest.raises(StoreIntegrityError):
            store.delete('accounts', {'id': 'itest-unit-a'})
        assert store.count('accounts', {'id': 'itest-unit-a'}) == 1

    def test_unknown_table(self, store):
        with pytest.raises(StoreError):
            store.select('nope')

    def test_conflict_is_store_error(self, store):
        store.insert('accounts', {'id': 'a', 'label': 'x'})
        with pytest.raises(StoreError) as exc_info:
            store.insert('accounts', {'id': 'a', 'label': 'x'})
        assert exc_info.value.table == 'accounts'

    def test_sqlite_driver_errors_become_store_errors(self, small_schema):
        store = SqliteStore()
        store.ensure_schema(small_schema)
        store.close()
        with pytest.raises(StoreError) as exc_info:
            store.count('accounts')
        assert exc_info.value.table == 'accounts'
        assert exc_info.value.detail == 'ProgrammingError'

    def test_store_error_fields(self):
        exc = StoreConflictError(table='t', message='duplicate key', detail='UNIQUE')
        assert (exc.table, exc.message, exc.detail) == ('t', 'duplicate key', 'UNIQUE')
        assert str(exc) == 'StoreConflictError(table=t) duplicate key detail=UNIQUE'


# =====================================================================
# 4. open_store
# =====================================================================


class TestOpenStore:

    def test_memory_url(self, small_schema):
        store = open_store('memory://', small_schema)
        assert isinstance(store, InMemoryStore)
        assert store.tables() == ['accounts', 'orders']

    def test_sqlite_url(self, tmp_path, small_schema):
        path = tmp_path / 'harness.db'
        store = open_store(f'sqlite:///{path}', small_schema)
        try:
            assert isinstance(store, SqliteStore)
            store.insert('accounts', {'id': 'a', 'label': 'x'})
        finally:
            store.close()
        reopened = open_store(f'sqlite:///{path}')
        try:
            assert reopened.count('accounts') == 1
        finally:
            reopened.close()

    def test_unsupported_url(self):
        with pytest.raises(ValueError):
            open_store('postgres://db')

    def test_memory_rows_are_copies(self):
        store = InMemoryStore()
        store.ensure_schema(StoreSchema([TableSpec(name='t', columns=('id', 'v'))]))
        store.insert('t', {'id': 'a', 'v': [1]})
        row = store.select('t')[0]
        row['v'].append(2)
        assert store.select('t')[0]['v'] == [1]
