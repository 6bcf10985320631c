"""
Storage adapters: the engine depends only on the Storage protocol.
"""

from collection_sync.models import PairConfig
from collection_sync.storage.base import Storage
from collection_sync.storage.filesystem import FilesystemStorage
from collection_sync.storage.readonly import ReadOnlyStorage

__all__ = ["FilesystemStorage", "ReadOnlyStorage", "Storage", "storages_for_pair"]


def storages_for_pair(pair: PairConfig) -> tuple[Storage, Storage]:
    """Instantiate both storages of a configured pair.

    With create_missing, a writable side whose collection directory does not
    exist yet is created empty; a read-only side is never created.
    """
    storage_a: Storage = FilesystemStorage(
        pair.path_a, pair.extension, create=pair.create_missing and pair.read_only != "a"
    )
    storage_b: Storage = FilesystemStorage(
        pair.path_b, pair.extension, create=pair.create_missing and pair.read_only != "b"
    )
    if pair.read_only == "a":
        storage_a = ReadOnlyStorage(storage_a)
    elif pair.read_only == "b":
        storage_b = ReadOnlyStorage(storage_b)
    return storage_a, storage_b
