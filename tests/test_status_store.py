"""
Unit tests for StatusStore: atomic commits, invariant checks on load, and
the corruption paths that must abort a pair instead of guessing.
"""

import sqlite3

import pytest

from collection_sync.db import StatusStore
from collection_sync.db import query_status
from collection_sync.models import CorruptStore
from collection_sync.models import RunSummary
from collection_sync.models import StatusRecord
from tests.conftest import PAIR_ID


def _record(aid: str, fp_a: str = "e1", fp_b: str = "e2") -> StatusRecord:
    return StatusRecord(aid, f"{aid}.ics", f"{aid}.ics", fp_a, fp_b)


class TestLoad:
    def test_missing_file_loads_empty_without_creating_it(self, store, status_path):
        assert store.load(PAIR_ID) == {}
        assert not status_path.exists()

    def test_commit_then_load_round_trip(self, store):
        with store.transaction(PAIR_ID) as tx:
            tx.upsert(_record("x1"))
            tx.upsert(StatusRecord("x2", "only-a.ics", None, "e3", None))

        records = store.load(PAIR_ID)
        assert set(records) == {"x1", "x2"}
        assert records["x1"].paired
        assert not records["x2"].paired
        assert records["x2"].identity_b is None

    def test_load_is_scoped_to_pair(self, store):
        with store.transaction(PAIR_ID) as tx:
            tx.upsert(_record("x1"))
        with store.transaction("contacts") as tx:
            tx.upsert(_record("y1"))

        assert set(store.load(PAIR_ID)) == {"x1"}
        assert set(store.load("contacts")) == {"y1"}

    def test_reopened_store_sees_committed_records(self, status_path):
        with StatusStore(status_path) as first:
            with first.transaction(PAIR_ID) as tx:
                tx.upsert(_record("x1"))

        with StatusStore(status_path) as second:
            assert second.load(PAIR_ID)["x1"].fingerprint_b == "e2"


class TestCommitSemantics:
    def test_upsert_replaces_existing_record(self, store):
        with store.transaction(PAIR_ID) as tx:
            tx.upsert(_record("x1", "e1", "e2"))
        with store.transaction(PAIR_ID) as tx:
            tx.upsert(_record("x1", "e5", "e6"))

        records = store.load(PAIR_ID)
        assert len(records) == 1
        assert (records["x1"].fingerprint_a, records["x1"].fingerprint_b) == ("e5", "e6")

    def test_delete_removes_record(self, store):
        with store.transaction(PAIR_ID) as tx:
            tx.upsert(_record("x1"))
            tx.upsert(_record("x2"))
        with store.transaction(PAIR_ID) as tx:
            tx.delete("x1")

        assert set(store.load(PAIR_ID)) == {"x2"}

    def test_staged_delete_cancels_staged_upsert(self, store):
        tx = store.begin_update()
        tx.upsert(_record("x1"))
        tx.delete("x1")
        assert len(tx) == 1
        store.commit(PAIR_ID, tx)
        assert store.load(PAIR_ID) == {}

    def test_exception_in_block_discards_staged_changes(self, store):
        with store.transaction(PAIR_ID) as tx:
            tx.upsert(_record("x1"))

        with pytest.raises(RuntimeError):
            with store.transaction(PAIR_ID) as tx:
                tx.delete("x1")
                tx.upsert(_record("x2"))
                raise RuntimeError("boom")

        assert set(store.load(PAIR_ID)) == {"x1"}

    def test_invalid_record_rolls_back_whole_batch(self, store):
        with store.transaction(PAIR_ID) as tx:
            tx.upsert(_record("x1"))

        tx = store.begin_update()
        tx.delete("x1")
        tx.upsert(_record("x2"))
        tx.upsert(StatusRecord("bad", "a.ics", None, None, None))
        with pytest.raises(CorruptStore):
            store.commit(PAIR_ID, tx)

        assert set(store.load(PAIR_ID)) == {"x1"}
        assert not store.conn.in_transaction

    def test_empty_transaction_does_not_create_file(self, store, status_path):
        with store.transaction(PAIR_ID):
            pass
        assert not status_path.exists()


class TestCorruption:
    def test_garbage_file_raises_corrupt_store(self, status_path):
        status_path.parent.mkdir(parents=True, exist_ok=True)
        status_path.write_bytes(b"this is not a sqlite database" * 100)

        with StatusStore(status_path) as store:
            with pytest.raises(CorruptStore):
                store.load(PAIR_ID)

    def test_record_without_any_identity_raises(self, store, status_path):
        with store.transaction(PAIR_ID) as tx:
            tx.upsert(_record("x1"))
        store.close()

        conn = sqlite3.connect(status_path)
        conn.execute("UPDATE status SET identity_a = NULL, identity_b = NULL")
        conn.commit()
        conn.close()

        with StatusStore(status_path) as reopened:
            with pytest.raises(CorruptStore):
                reopened.load(PAIR_ID)

    def test_identity_without_fingerprint_raises(self, store, status_path):
        with store.transaction(PAIR_ID) as tx:
            tx.upsert(_record("x1"))
        store.close()

        conn = sqlite3.connect(status_path)
        conn.execute("UPDATE status SET fingerprint_b = NULL")
        conn.commit()
        conn.close()

        with StatusStore(status_path) as reopened:
            with pytest.raises(CorruptStore):
                reopened.load(PAIR_ID)

    def test_unknown_schema_version_raises(self, store, status_path):
        with store.transaction(PAIR_ID) as tx:
            tx.upsert(_record("x1"))
        store.close()

        conn = sqlite3.connect(status_path)
        conn.execute("UPDATE schema_info SET version = 99")
        conn.commit()
        conn.close()

        with StatusStore(status_path) as reopened:
            with pytest.raises(CorruptStore):
                reopened.load(PAIR_ID)

    def test_identity_claimed_by_two_records_raises(self, store):
        with store.transaction(PAIR_ID) as tx:
            tx.upsert(StatusRecord("r1", "x1.ics", "y1.ics", "e1", "e2"))
            tx.upsert(StatusRecord("r2", "x2.ics", "y1.ics", "e3", "e4"))

        with pytest.raises(CorruptStore, match="y1.ics"):
            store.load(PAIR_ID)


class TestRunHistory:
    def test_last_run_returns_most_recent_summary(self, store):
        store.record_run(PAIR_ID, RunSummary(created_b=3))
        summary = RunSummary(updated_a=1, deferred_ids=["c1"], conflicts_deferred=1)
        store.record_run(PAIR_ID, summary)

        last = store.last_run(PAIR_ID)
        assert last["updated_a"] == 1
        assert last["created_b"] == 0
        assert last["deferred_ids"] == ["c1"]
        assert last["finished_at"] > 0

    def test_last_run_without_history(self, store):
        assert store.last_run(PAIR_ID) is None

    def test_query_status_counts_records(self, store, status_path):
        with store.transaction(PAIR_ID) as tx:
            tx.upsert(_record("x1"))
            tx.upsert(StatusRecord("x2", "only-a.ics", None, "e3", None))

        rows = query_status(status_path)
        assert len(rows) == 1
        assert rows[0]["pair_id"] == PAIR_ID
        assert rows[0]["count"] == 2
        assert rows[0]["paired"] == 1

    def test_query_status_missing_file(self, tmp_path):
        assert query_status(tmp_path / "absent.db") == []
