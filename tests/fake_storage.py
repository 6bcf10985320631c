"""
In-memory fake storage for testing.

Satisfies the Storage protocol without touching the filesystem.  Items are
kept in a plain dict keyed by identity; every write assigns a fresh
server-style fingerprint ("e1", "e2", ...).
"""

import itertools
import threading

from collection_sync.models import ItemRef
from collection_sync.models import NotFound
from collection_sync.models import PreconditionFailed


class FakeStorage:
    """In-memory stub with operation logs and failure injection."""

    def __init__(self, name: str, etags=None, identity_for=None):
        self.name = name
        # identity → (content, fingerprint)
        self._items: dict[str, tuple[bytes, str]] = {}
        self._etags = etags if etags is not None else itertools.count(1)
        self._identity_for = identity_for
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self._failures: dict[tuple[str, str | None], Exception] = {}
        self.hooks: dict[str, object] = {}
        self.fetches: list[str] = []
        self.creates: list[str] = []
        self.updates: list[str] = []
        self.deletes: list[str] = []

    # ------------------------------------------------------------------ #
    # Internal helpers                                                      #
    # ------------------------------------------------------------------ #

    def _next_fingerprint(self) -> str:
        return f"e{next(self._etags)}"

    def _before(self, op: str, identity: str | None):
        hook = self.hooks.get(op)
        if hook is not None:
            hook(identity)
        error = self._failures.get((op, identity)) or self._failures.get((op, None))
        if error is not None:
            raise error

    def _check_precondition(self, identity: str, expected: str):
        if identity not in self._items:
            raise NotFound(f"{identity} not found in {self.name}", identity)
        actual = self._items[identity][1]
        if actual != expected:
            raise PreconditionFailed(
                f"{identity} in {self.name}: expected {expected}, found {actual}", identity
            )

    # ------------------------------------------------------------------ #
    # Storage interface                                                     #
    # ------------------------------------------------------------------ #

    def list(self) -> list[ItemRef]:
        self._before("list", None)
        with self._lock:
            return [ItemRef(identity, fp) for identity, (_, fp) in self._items.items()]

    def fetch(self, identity: str) -> tuple[bytes, str]:
        self._before("fetch", identity)
        with self._lock:
            self.fetches.append(identity)
            if identity not in self._items:
                raise NotFound(f"{identity} not found in {self.name}", identity)
            return self._items[identity]

    def create(self, content: bytes) -> tuple[str, str]:
        self._before("create", None)
        with self._lock:
            if self._identity_for is not None:
                identity = self._identity_for(content)
            else:
                identity = f"{self.name}-{next(self._ids)}"
            fingerprint = self._next_fingerprint()
            self._items[identity] = (content, fingerprint)
            self.creates.append(identity)
            return identity, fingerprint

    def update(self, identity: str, content: bytes, expected_fingerprint: str) -> str:
        self._before("update", identity)
        with self._lock:
            self._check_precondition(identity, expected_fingerprint)
            fingerprint = self._next_fingerprint()
            self._items[identity] = (content, fingerprint)
            self.updates.append(identity)
            return fingerprint

    def delete(self, identity: str, expected_fingerprint: str) -> None:
        self._before("delete", identity)
        with self._lock:
            self._check_precondition(identity, expected_fingerprint)
            del self._items[identity]
            self.deletes.append(identity)

    # ------------------------------------------------------------------ #
    # Test helpers                                                          #
    # ------------------------------------------------------------------ #

    def put(self, identity: str, content: bytes, fingerprint: str | None = None) -> str:
        """Write an item out of band (simulates an edit by another client)."""
        with self._lock:
            fingerprint = fingerprint or self._next_fingerprint()
            self._items[identity] = (content, fingerprint)
            return fingerprint

    def remove(self, identity: str):
        """Delete an item out of band."""
        with self._lock:
            del self._items[identity]

    def fail(self, op: str, error: Exception, identity: str | None = None):
        """Make ``op`` raise ``error`` (for one identity, or for every call)."""
        self._failures[(op, identity)] = error

    def clear_failures(self):
        self._failures.clear()

    def content(self, identity: str) -> bytes:
        return self._items[identity][0]

    def fingerprint(self, identity: str) -> str:
        return self._items[identity][1]

    def identities(self) -> set[str]:
        return set(self._items)

    def contents(self) -> set[bytes]:
        return {content for content, _ in self._items.values()}

    @property
    def item_count(self) -> int:
        return len(self._items)

    @property
    def mutations(self) -> int:
        return len(self.creates) + len(self.updates) + len(self.deletes)
