"""Test namespace: the single value-space partition for harness-owned records.

Every record the harness creates carries an identifier that starts with the
namespace prefix. Purging is then "delete everything whose namespace column
matches the prefix". The predicate lives here and nowhere else; store
accessors receive a ``TestNamespace`` instead of building patterns
themselves.

Usage::

    ns = TestNamespace("itest-onboarding-")
    ns.qualify("S1")        # 'itest-onboarding-S1'
    ns.matches("prod-42")   # False
    ns.filter_for("id")     # {"id": ("prefix", "itest-onboarding-")}
"""

from __future__ import annotations

import re
import threading
from dataclasses import dataclass

from .errors import NamespaceConfigError, NamespaceViolation

DEFAULT_PREFIX = "itest-harness-"

MIN_PREFIX_LENGTH = 6

# Lowercase alphanumerics, '_', '-' and ':'; must end on a separator so that
# a prefix can never match a longer word that merely starts the same way.
_VALID_PREFIX = re.compile(r"^[a-z0-9][a-z0-9_:\-]*[_:\-]$")


@dataclass(frozen=True, slots=True)
class TestNamespace:
    """Collision-resistant identifier prefix marking test-owned records."""

    __test__ = False

    prefix: str = DEFAULT_PREFIX

    def __post_init__(self) -> None:
        problems = validate_prefix(self.prefix)
        if problems:
            raise NamespaceConfigError("; ".join(problems))

    def matches(self, value: object) -> bool:
        """True if ``value`` belongs to this namespace."""
        return isinstance(value, str) and value.startswith(self.prefix)

    def qualify(self, local_id: str) -> str:
        """Return ``local_id`` inside the namespace (idempotent)."""
        if self.matches(local_id):
            return local_id
        return f"{self.prefix}{local_id}"

    def require(self, value: str) -> str:
        """Return ``value`` unchanged or raise ``NamespaceViolation``."""
        if not self.matches(value):
            raise NamespaceViolation(value, self.prefix)
        return value

    def filter_for(self, column: str) -> dict[str, tuple[str, str]]:
        """Store filter selecting this namespace's rows by ``column``."""
        return {column: ("prefix", self.prefix)}

    def overlaps(self, other: TestNamespace) -> bool:
        """True if one namespace's records could match the other's predicate."""
        return self.prefix.startswith(other.prefix) or other.prefix.startswith(
            self.prefix
        )


def validate_prefix(prefix: str) -> list[str]:
    """Return a list of problems with ``prefix``. Empty means valid."""
    errors: list[str] = []
    if not isinstance(prefix, str) or not prefix:
        return ["namespace prefix must be a non-empty string"]
    if len(prefix) < MIN_PREFIX_LENGTH:
        errors.append(
            f"namespace prefix {prefix!r} must be >= {MIN_PREFIX_LENGTH} characters"
        )
    if not _VALID_PREFIX.match(prefix):
        errors.append(
            f"namespace prefix {prefix!r} must be lowercase [a-z0-9_:-] "
            "and end with '-', '_' or ':'"
        )
    return errors


class NamespaceRegistry:
    """Tracks namespaces held by active suites in this process.

    Two suites whose prefixes overlap would purge each other's records, so
    the second one is rejected at suite start.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: set[TestNamespace] = set()

    def acquire(self, namespace: TestNamespace) -> None:
        with self._lock:
            for held in self._active:
                if held.overlaps(namespace):
                    raise NamespaceConfigError(
                        f"namespace {namespace.prefix!r} overlaps active "
                        f"namespace {held.prefix!r}"
                    )
            self._active.add(namespace)

    def release(self, namespace: TestNamespace) -> None:
        with self._lock:
            self._active.discard(namespace)

    @property
    def active(self) -> frozenset[TestNamespace]:
        with self._lock:
            return frozenset(self._active)


# Process-wide registry used by the sequencer.
registry = NamespaceRegistry()
