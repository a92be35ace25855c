"""Pytest configuration for ephemeral_harness tests."""
import sys
from pathlib import Path

# Add src/ to path for src-layout imports
_PROJECT_ROOT = Path(__file__).parent.parent
_SRC = _PROJECT_ROOT / 'src'
if str(_SRC) not in sys.path:
    sys.path.insert(0, str(_SRC))

import pytest

from ephemeral_harness.namespace import NamespaceRegistry, TestNamespace
from ephemeral_harness.protocols import StateSnapshot
from ephemeral_harness.store import InMemoryStore, SqliteStore
from ephemeral_harness.store.schema import StoreSchema, TableSpec

pytest_plugins = ['ephemeral_harness.pytest_plugin']


ACCOUNTS = TableSpec(name='accounts', columns=('id', 'label'))
ORDERS = TableSpec(
    name='orders',
    columns=('id', 'account_id', 'total'),
    namespace_column='account_id',
    references=(('account_id', 'accounts'),),
)
SMALL_SCHEMA = StoreSchema([ORDERS, ACCOUNTS])


class EchoSystem:
    """Minimal system under test: echoes every inbound payload as an effect.

    Persists one ``accounts`` row per subject so isolation has something to
    purge.
    """

    def __init__(self, store):
        self.store = store
        self.callbacks = []
        self.inbound = []

    def handle_inbound_request(self, raw_payload):
        self.inbound.append(raw_payload)
        subject_id = raw_payload['subject_id']
        if not self.store.count('accounts', {'id': subject_id}):
            self.store.insert('accounts', {'id': subject_id, 'label': 'echo'})
        for callback in self.callbacks:
            callback({'subject_id': subject_id, 'text': raw_payload.get('text')})

    def on_outbound_effect(self, callback):
        self.callbacks.append(callback)

    def query_state(self, subject_id):
        rows = self.store.select('accounts', {'id': subject_id})
        if not rows:
            return None
        return StateSnapshot(
            subject_id=subject_id,
            session={'label': rows[0]['label']},
            history=tuple(
                {'text': p.get('text')} for p in self.inbound
                if p['subject_id'] == subject_id
            ),
            flags={'known': True},
        )


@pytest.fixture
def namespace():
    return TestNamespace('itest-unit-')


@pytest.fixture
def namespaces():
    """A private registry so tests never contend with the plugin's suite."""
    return NamespaceRegistry()


@pytest.fixture(params=['memory', 'sqlite'])
def store(request):
    """The small schema on each backend."""
    if request.param == 'memory':
        backend = InMemoryStore()
    else:
        backend = SqliteStore()
    backend.ensure_schema(SMALL_SCHEMA)
    yield backend
    backend.close()


@pytest.fixture
def memory_store():
    backend = InMemoryStore()
    backend.ensure_schema(SMALL_SCHEMA)
    return backend


@pytest.fixture
def small_schema():
    return SMALL_SCHEMA


@pytest.fixture
def echo_system(memory_store):
    return EchoSystem(memory_store)
