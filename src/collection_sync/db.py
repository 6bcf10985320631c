"""
SQLite status persistence for collection-pair sync tracking.
"""

import json
import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path

from collection_sync.models import CorruptStore
from collection_sync.models import RunSummary
from collection_sync.models import StatusRecord

SCHEMA_VERSION = 1

logger = logging.getLogger(__name__)


class StatusTransaction:
    """Record upserts and deletions staged for one atomic commit."""

    def __init__(self):
        self.upserts: dict[str, StatusRecord] = {}
        self.deletes: set[str] = set()

    def upsert(self, record: StatusRecord):
        self.deletes.discard(record.association_id)
        self.upserts[record.association_id] = record

    def delete(self, association_id: str):
        self.upserts.pop(association_id, None)
        self.deletes.add(association_id)

    def __len__(self) -> int:
        return len(self.upserts) + len(self.deletes)


class StatusStore:
    """Manages the SQLite status database of one collection pair.

    The file is only created by the first commit: loading from a path that
    does not exist yet yields an empty record set.
    """

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self.conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def _connect(self, create: bool) -> sqlite3.Connection | None:
        if self.conn is not None:
            return self.conn
        if not create and not self.db_path.exists():
            return None
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            # Autocommit mode: transactions are opened explicitly in commit().
            conn = sqlite3.connect(
                str(self.db_path), isolation_level=None, check_same_thread=False
            )
            conn.row_factory = sqlite3.Row  # Enable column access by name
            self._init_schema(conn)
        except sqlite3.DatabaseError as e:
            raise CorruptStore(f"Cannot open status database {self.db_path}: {e}") from e
        self.conn = conn
        return conn

    def _init_schema(self, conn: sqlite3.Connection):
        """Create the tables if they don't exist and check the schema version."""
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS schema_info (
                version INTEGER NOT NULL
            );
            CREATE TABLE IF NOT EXISTS status (
                pair_id TEXT NOT NULL,
                association_id TEXT NOT NULL,
                identity_a TEXT,
                identity_b TEXT,
                fingerprint_a TEXT,
                fingerprint_b TEXT,
                created_at INTEGER NOT NULL,
                last_sync_at INTEGER NOT NULL,
                PRIMARY KEY (pair_id, association_id)
            );
            CREATE TABLE IF NOT EXISTS sync_runs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                pair_id TEXT NOT NULL,
                finished_at INTEGER NOT NULL,
                summary TEXT NOT NULL
            );
        """)
        row = conn.execute("SELECT version FROM schema_info").fetchone()
        if row is None:
            conn.execute("INSERT INTO schema_info (version) VALUES (?)", (SCHEMA_VERSION,))
        elif row["version"] != SCHEMA_VERSION:
            raise CorruptStore(
                f"Status database {self.db_path} has schema version {row['version']}, "
                f"expected {SCHEMA_VERSION}"
            )

    # ------------------------------------------------------------------ #
    # Reads                                                                #
    # ------------------------------------------------------------------ #

    def load(self, pair_id: str) -> dict[str, StatusRecord]:
        """Return every status record of the pair, keyed by association id.

        Raises CorruptStore instead of skipping rows that cannot be trusted.
        """
        conn = self._connect(create=False)
        if conn is None:
            logger.debug(f"No status database at {self.db_path}, starting empty")
            return {}

        try:
            rows = conn.execute(
                "SELECT association_id, identity_a, identity_b, fingerprint_a, fingerprint_b "
                "FROM status WHERE pair_id = ?",
                (pair_id,),
            ).fetchall()
        except sqlite3.DatabaseError as e:
            raise CorruptStore(f"Cannot read status database {self.db_path}: {e}") from e

        records = {}
        for row in rows:
            record = StatusRecord(
                association_id=row["association_id"],
                identity_a=row["identity_a"],
                identity_b=row["identity_b"],
                fingerprint_a=row["fingerprint_a"],
                fingerprint_b=row["fingerprint_b"],
            )
            _check_record(record)
            records[record.association_id] = record
        _check_unique_identities(records)
        return records

    def last_run(self, pair_id: str) -> dict | None:
        """Return the summary persisted by the most recent run, if any."""
        conn = self._connect(create=False)
        if conn is None:
            return None
        try:
            row = conn.execute(
                "SELECT finished_at, summary FROM sync_runs WHERE pair_id = ? "
                "ORDER BY id DESC LIMIT 1",
                (pair_id,),
            ).fetchone()
            if row is None:
                return None
            summary = json.loads(row["summary"])
        except (sqlite3.DatabaseError, ValueError) as e:
            raise CorruptStore(f"Cannot read run history from {self.db_path}: {e}") from e
        summary["finished_at"] = row["finished_at"]
        return summary

    # ------------------------------------------------------------------ #
    # Writes                                                               #
    # ------------------------------------------------------------------ #

    def begin_update(self) -> StatusTransaction:
        return StatusTransaction()

    def commit(self, pair_id: str, tx: StatusTransaction):
        """Persist every staged change of tx atomically, or none of them."""
        if not len(tx):
            return
        with self._lock:
            conn = self._connect(create=True)
            timestamp = int(time.time())
            try:
                conn.execute("BEGIN IMMEDIATE")
                for association_id in tx.deletes:
                    conn.execute(
                        "DELETE FROM status WHERE pair_id = ? AND association_id = ?",
                        (pair_id, association_id),
                    )
                for record in tx.upserts.values():
                    _check_record(record)
                    conn.execute(
                        "INSERT INTO status "
                        "(pair_id, association_id, identity_a, identity_b, "
                        " fingerprint_a, fingerprint_b, created_at, last_sync_at) "
                        "VALUES (?, ?, ?, ?, ?, ?, ?, ?) "
                        "ON CONFLICT(pair_id, association_id) DO UPDATE SET "
                        "identity_a = excluded.identity_a, "
                        "identity_b = excluded.identity_b, "
                        "fingerprint_a = excluded.fingerprint_a, "
                        "fingerprint_b = excluded.fingerprint_b, "
                        "last_sync_at = excluded.last_sync_at",
                        (
                            pair_id,
                            record.association_id,
                            record.identity_a,
                            record.identity_b,
                            record.fingerprint_a,
                            record.fingerprint_b,
                            timestamp,
                            timestamp,
                        ),
                    )
                conn.execute("COMMIT")
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
        logger.debug(
            f"Committed {len(tx.upserts)} upsert(s), {len(tx.deletes)} deletion(s) "
            f"for pair {pair_id}"
        )

    @contextmanager
    def transaction(self, pair_id: str):
        """Stage changes in a block; commit on normal exit, discard on error."""
        tx = self.begin_update()
        yield tx
        self.commit(pair_id, tx)

    def record_run(self, pair_id: str, summary: RunSummary):
        """Persist the final summary of a run."""
        with self._lock:
            conn = self._connect(create=True)
            conn.execute(
                "INSERT INTO sync_runs (pair_id, finished_at, summary) VALUES (?, ?, ?)",
                (pair_id, int(time.time()), json.dumps(summary.as_dict())),
            )

    def close(self):
        """Close the database connection."""
        if self.conn:
            self.conn.close()
            self.conn = None


def _check_record(record: StatusRecord):
    if record.identity_a is None and record.identity_b is None:
        raise CorruptStore(f"Status record {record.association_id} has no identity")
    if (record.identity_a is None) != (record.fingerprint_a is None) or (
        record.identity_b is None
    ) != (record.fingerprint_b is None):
        raise CorruptStore(
            f"Status record {record.association_id} has an identity without a fingerprint"
        )


def _check_unique_identities(records: dict[str, StatusRecord]):
    for side in ("a", "b"):
        owners: dict[str, str] = {}
        for record in records.values():
            identity = getattr(record, f"identity_{side}")
            if identity is None:
                continue
            if identity in owners:
                raise CorruptStore(
                    f"Identity {identity!r} on side {side.upper()} is claimed by records "
                    f"{owners[identity]} and {record.association_id}"
                )
            owners[identity] = record.association_id


def query_status(db_path: Path) -> list:
    """
    Return aggregate rows for every pair recorded in the database.

    Each row exposes: pair_id, count, paired, last_sync_at.
    Returns an empty list when the DB file does not exist.
    """
    if not db_path.exists():
        return []
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    try:
        cursor = conn.execute("""
            SELECT
                pair_id,
                COUNT(*)                                              AS count,
                SUM(identity_a IS NOT NULL AND identity_b IS NOT NULL) AS paired,
                MAX(last_sync_at)                                     AS last_sync_at
            FROM status
            GROUP BY pair_id
            ORDER BY pair_id
        """)
        return cursor.fetchall()
    except sqlite3.DatabaseError as e:
        raise CorruptStore(f"Cannot read status database {db_path}: {e}") from e
    finally:
        conn.close()


def status_path(status_dir: Path, pair_id: str) -> Path:
    """Return the status database file of a pair."""
    return status_dir / f"{pair_id}.db"
