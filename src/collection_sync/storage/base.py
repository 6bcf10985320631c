"""
Capability set every storage adapter provides to the sync engine.
"""

from typing import Protocol
from typing import runtime_checkable

from collection_sync.models import ItemRef


@runtime_checkable
class Storage(Protocol):
    """One item collection (a calendar, an address book, ...).

    Items are opaque byte blobs addressed by a storage-local identity.
    Fingerprints are opaque tokens compared only for equality.

    Errors are reported with the StorageError family from models:
    StorageUnavailable for IO/transport problems, NotFound when the
    identity is gone, PreconditionFailed when the expected fingerprint no
    longer matches, ReadOnlyError when mutations are refused.
    """

    name: str

    def list(self) -> list[ItemRef]:
        """Return the identity and current fingerprint of every item."""
        ...

    def fetch(self, identity: str) -> tuple[bytes, str]:
        """Return (content, fingerprint) of one item."""
        ...

    def create(self, content: bytes) -> tuple[str, str]:
        """Store a new item; return its (identity, fingerprint)."""
        ...

    def update(self, identity: str, content: bytes, expected_fingerprint: str) -> str:
        """Replace an item's content; return the new fingerprint."""
        ...

    def delete(self, identity: str, expected_fingerprint: str) -> None:
        """Remove an item."""
        ...
