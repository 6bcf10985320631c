"""
Wrapper that exposes a storage for reading only.
"""

from collection_sync.models import ItemRef
from collection_sync.models import ReadOnlyError
from collection_sync.storage.base import Storage


class ReadOnlyStorage:
    """Passes reads through to the wrapped storage and refuses every mutation."""

    def __init__(self, inner: Storage):
        self.inner = inner
        self.name = f"{inner.name} (read-only)"

    def list(self) -> list[ItemRef]:
        return self.inner.list()

    def fetch(self, identity: str) -> tuple[bytes, str]:
        return self.inner.fetch(identity)

    def create(self, content: bytes) -> tuple[str, str]:
        raise ReadOnlyError(f"{self.inner.name} is read-only")

    def update(self, identity: str, content: bytes, expected_fingerprint: str) -> str:
        raise ReadOnlyError(f"{self.inner.name} is read-only", identity)

    def delete(self, identity: str, expected_fingerprint: str) -> None:
        raise ReadOnlyError(f"{self.inner.name} is read-only", identity)
