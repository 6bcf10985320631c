"""
Filesystem ("vdir") storage: one collection per directory, one item per file.
"""

import logging
import os
import tempfile
import uuid
from pathlib import Path

from collection_sync.models import ItemRef
from collection_sync.models import NotFound
from collection_sync.models import PreconditionFailed
from collection_sync.models import StorageUnavailable

logger = logging.getLogger(__name__)

_TMP_PREFIX = ".tmp-"


def fingerprint_for_stat(st: os.stat_result) -> str:
    """Return the fingerprint of a file from its metadata.

    Every write replaces the file, so the inode changes even when two
    writes land within the same mtime tick.
    """
    return f"{st.st_mtime_ns};{st.st_ino}"


class FilesystemStorage:
    """Items stored as ``<identity>`` files with a fixed extension inside ``path``."""

    def __init__(self, path: Path, extension: str = "ics", create: bool = False):
        self.path = Path(path).expanduser()
        self.extension = extension.lstrip(".")
        self.name = str(self.path)
        if create and not self.path.is_dir():
            try:
                self.path.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise StorageUnavailable(f"Cannot create collection {self.path}: {e}") from e
            logger.info(f"Created collection {self.path}")

    # ------------------------------------------------------------------ #
    # Internal helpers                                                      #
    # ------------------------------------------------------------------ #

    def _item_path(self, identity: str) -> Path:
        if "/" in identity or os.sep in identity or identity.startswith("."):
            raise NotFound(f"Invalid item identity {identity!r}", identity)
        return self.path / identity

    def _is_item(self, filename: str) -> bool:
        return not filename.startswith(".") and filename.endswith(f".{self.extension}")

    def _current_fingerprint(self, identity: str) -> str:
        try:
            return fingerprint_for_stat(os.stat(self._item_path(identity)))
        except FileNotFoundError:
            raise NotFound(f"Item {identity} not found in {self.name}", identity) from None
        except OSError as e:
            raise StorageUnavailable(f"Cannot stat {identity} in {self.name}: {e}", identity) from e

    def _write(self, target: Path, content: bytes) -> str:
        """Atomically write content to target and return the new fingerprint."""
        fd, tmp_name = tempfile.mkstemp(prefix=_TMP_PREFIX, dir=self.path)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, target)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise
        return fingerprint_for_stat(os.stat(target))

    # ------------------------------------------------------------------ #
    # Storage interface                                                     #
    # ------------------------------------------------------------------ #

    def list(self) -> list[ItemRef]:
        """Return every item file in the collection directory."""
        items = []
        try:
            with os.scandir(self.path) as entries:
                for entry in entries:
                    if not self._is_item(entry.name):
                        continue
                    try:
                        if not entry.is_file():
                            continue
                        st = entry.stat()
                    except FileNotFoundError:
                        continue  # Removed while listing
                    items.append(ItemRef(entry.name, fingerprint_for_stat(st)))
        except FileNotFoundError:
            raise StorageUnavailable(f"Collection {self.name} does not exist") from None
        except OSError as e:
            raise StorageUnavailable(f"Cannot list {self.name}: {e}") from e
        return items

    def fetch(self, identity: str) -> tuple[bytes, str]:
        path = self._item_path(identity)
        try:
            with open(path, "rb") as f:
                content = f.read()
                fingerprint = fingerprint_for_stat(os.fstat(f.fileno()))
        except FileNotFoundError:
            raise NotFound(f"Item {identity} not found in {self.name}", identity) from None
        except OSError as e:
            raise StorageUnavailable(
                f"Cannot read {identity} from {self.name}: {e}", identity
            ) from e
        return content, fingerprint

    def create(self, content: bytes) -> tuple[str, str]:
        identity = f"{uuid.uuid4().hex}.{self.extension}"
        try:
            fingerprint = self._write(self._item_path(identity), content)
        except OSError as e:
            raise StorageUnavailable(f"Cannot create item in {self.name}: {e}") from e
        logger.debug(f"Created {identity} in {self.name}")
        return identity, fingerprint

    def update(self, identity: str, content: bytes, expected_fingerprint: str) -> str:
        actual = self._current_fingerprint(identity)
        if actual != expected_fingerprint:
            raise PreconditionFailed(
                f"Item {identity} in {self.name} changed (expected {expected_fingerprint}, "
                f"found {actual})",
                identity,
            )
        try:
            fingerprint = self._write(self._item_path(identity), content)
        except OSError as e:
            raise StorageUnavailable(
                f"Cannot write {identity} to {self.name}: {e}", identity
            ) from e
        logger.debug(f"Updated {identity} in {self.name}")
        return fingerprint

    def delete(self, identity: str, expected_fingerprint: str) -> None:
        actual = self._current_fingerprint(identity)
        if actual != expected_fingerprint:
            raise PreconditionFailed(
                f"Item {identity} in {self.name} changed (expected {expected_fingerprint}, "
                f"found {actual})",
                identity,
            )
        try:
            os.unlink(self._item_path(identity))
        except FileNotFoundError:
            raise NotFound(f"Item {identity} not found in {self.name}", identity) from None
        except OSError as e:
            raise StorageUnavailable(
                f"Cannot delete {identity} from {self.name}: {e}", identity
            ) from e
        logger.debug(f"Deleted {identity} from {self.name}")
