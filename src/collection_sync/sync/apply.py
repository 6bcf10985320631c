"""
Plan execution against both storages, with incremental status commits.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor

from collection_sync.db import StatusStore
from collection_sync.models import Action
from collection_sync.models import FailureReason
from collection_sync.models import NotFound
from collection_sync.models import PlanEntry
from collection_sync.models import PreconditionFailed
from collection_sync.models import ReadOnlyError
from collection_sync.models import Resolution
from collection_sync.models import RunSummary
from collection_sync.models import StatusChange
from collection_sync.models import StatusRecord
from collection_sync.models import StorageError
from collection_sync.models import StorageUnavailable
from collection_sync.storage.base import Storage
from collection_sync.sync.conflicts import effective_action

logger = logging.getLogger(__name__)

_COUNTERS = {
    Action.CREATE_ON_A: "created_a",
    Action.CREATE_ON_B: "created_b",
    Action.UPDATE_A_FROM_B: "updated_a",
    Action.UPDATE_B_FROM_A: "updated_b",
    Action.DELETE_ON_A: "deleted_a",
    Action.DELETE_ON_B: "deleted_b",
}

_DELETES = (Action.DELETE_ON_A, Action.DELETE_ON_B)


def failure_reason(error: Exception) -> FailureReason:
    """Map a per-item error onto the reason reported in the run summary."""
    if isinstance(error, (PreconditionFailed, NotFound)):
        return FailureReason.LOST_RACE
    if isinstance(error, (StorageUnavailable, TimeoutError)):
        return FailureReason.UNAVAILABLE
    if isinstance(error, ReadOnlyError):
        return FailureReason.READ_ONLY
    return FailureReason.ERROR


def count_action(summary: RunSummary, entry: PlanEntry, action: Action):
    """Add one executed (or, on dry runs, planned) action to the summary."""
    counter = _COUNTERS.get(action)
    if counter:
        setattr(summary, counter, getattr(summary, counter) + 1)
    if entry.action is Action.CONFLICT:
        if entry.resolution in (None, Resolution.DEFER):
            summary.conflicts_deferred += 1
            summary.deferred_ids.append(entry.association_id)
        else:
            summary.conflicts_resolved += 1


class ChangeApplier:
    """Executes a resolved plan for one collection pair.

    Each association is independent.  A storage mutation is followed by a
    status update staged into the current transaction; transactions are
    committed every ``batch_size`` items, one writer at a time.
    """

    def __init__(
        self,
        pair_id: str,
        storage_a: Storage,
        storage_b: Storage,
        store: StatusStore,
        max_workers: int = 4,
        batch_size: int = 1,
    ):
        if max_workers < 1 or batch_size < 1:
            raise ValueError("max_workers and batch_size must be at least 1")
        self.pair_id = pair_id
        self.storage_a = storage_a
        self.storage_b = storage_b
        self.store = store
        self.max_workers = max_workers
        self.batch_size = batch_size
        self._lock = threading.Lock()
        self._tx = store.begin_update()
        self._summary = RunSummary()

    # ------------------------------------------------------------------ #
    # Status bookkeeping                                                    #
    # ------------------------------------------------------------------ #

    def _stage(self, entry: PlanEntry, action: Action, record: StatusRecord | None):
        """Record a committed storage mutation; call with self._lock held."""
        if record is None:
            self._tx.delete(entry.association_id)
        else:
            self._tx.upsert(record)
        count_action(self._summary, entry, action)
        if len(self._tx) >= self.batch_size:
            self._flush()

    def _flush(self):
        """Commit staged status changes; call with self._lock held."""
        if len(self._tx):
            tx, self._tx = self._tx, self.store.begin_update()
            self.store.commit(self.pair_id, tx)

    # ------------------------------------------------------------------ #
    # Storage mutations                                                     #
    # ------------------------------------------------------------------ #

    def _copy(self, entry: PlanEntry, action: Action) -> StatusRecord:
        if action in (Action.CREATE_ON_B, Action.UPDATE_B_FROM_A):
            content, fp_a = self.storage_a.fetch(entry.identity_a)
            if action is Action.CREATE_ON_B:
                identity_b, fp_b = self.storage_b.create(content)
                logger.debug(f"Created {identity_b} on B from {entry.identity_a}")
            else:
                identity_b = entry.identity_b
                fp_b = self.storage_b.update(identity_b, content, entry.fingerprint_b)
                logger.debug(f"Updated {identity_b} on B from {entry.identity_a}")
            return StatusRecord(entry.association_id, entry.identity_a, identity_b, fp_a, fp_b)

        content, fp_b = self.storage_b.fetch(entry.identity_b)
        if action is Action.CREATE_ON_A:
            identity_a, fp_a = self.storage_a.create(content)
            logger.debug(f"Created {identity_a} on A from {entry.identity_b}")
        else:
            identity_a = entry.identity_a
            fp_a = self.storage_a.update(identity_a, content, entry.fingerprint_a)
            logger.debug(f"Updated {identity_a} on A from {entry.identity_b}")
        return StatusRecord(entry.association_id, identity_a, entry.identity_b, fp_a, fp_b)

    def _delete(self, entry: PlanEntry, action: Action):
        if action is Action.DELETE_ON_A:
            storage, identity, fingerprint = self.storage_a, entry.identity_a, entry.fingerprint_a
        else:
            storage, identity, fingerprint = self.storage_b, entry.identity_b, entry.fingerprint_b
        try:
            storage.delete(identity, fingerprint)
            logger.debug(f"Deleted {identity} from {storage.name}")
        except NotFound:
            # Already gone: the outcome is the same as a successful delete.
            logger.debug(f"{identity} already removed from {storage.name}")

    def _apply_entry(self, entry: PlanEntry, action: Action, cancel_event):
        if cancel_event is not None and cancel_event.is_set():
            with self._lock:
                self._summary.cancelled = True
            return

        try:
            if action in _DELETES:
                self._delete(entry, action)
                record = None
            else:
                record = self._copy(entry, action)
        except (StorageError, TimeoutError) as e:
            reason = failure_reason(e)
            if reason is FailureReason.LOST_RACE:
                logger.warning(
                    f"Lost race on {entry.association_id} ({action.value}): {e}; "
                    f"will be re-planned next run"
                )
            else:
                logger.error(f"Failed to {action.value} for {entry.association_id}: {e}")
            with self._lock:
                self._summary.failures[entry.association_id] = reason
            return

        with self._lock:
            self._stage(entry, action, record)

    # ------------------------------------------------------------------ #
    # Entry point                                                           #
    # ------------------------------------------------------------------ #

    def apply(self, plan: list[PlanEntry], cancel_event: threading.Event | None = None):
        """Execute plan and return the RunSummary.

        Creates and updates run before deletes.  Once cancel_event is set
        no further storage operation starts; in-flight ones complete and
        are committed before returning.
        """
        copies = []
        deletes = []
        with self._lock:
            self._tx = self.store.begin_update()
            self._summary = RunSummary()
            for entry in plan:
                action = effective_action(entry)
                if action is Action.NO_OP:
                    if entry.status_change is StatusChange.FORGET:
                        self._stage(entry, action, None)
                    elif entry.status_change is StatusChange.REFRESH:
                        record = StatusRecord(
                            entry.association_id,
                            entry.identity_a,
                            entry.identity_b,
                            entry.fingerprint_a,
                            entry.fingerprint_b,
                        )
                        self._stage(entry, action, record)
                    else:
                        count_action(self._summary, entry, action)
                elif action in _DELETES:
                    deletes.append((entry, action))
                else:
                    copies.append((entry, action))

        try:
            for batch in (copies, deletes):
                if not batch:
                    continue
                if cancel_event is not None and cancel_event.is_set():
                    with self._lock:
                        self._summary.cancelled = True
                    break
                with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                    futures = [
                        pool.submit(self._apply_entry, entry, action, cancel_event)
                        for entry, action in batch
                    ]
                for future in futures:
                    future.result()
        finally:
            with self._lock:
                self._flush()

        if self._summary.cancelled:
            logger.warning(f"Sync of {self.pair_id} cancelled; partial results committed")
        return self._summary
