"""
PairSynchronizer: thin orchestrator that delegates to sync submodules.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor

from collection_sync.db import StatusStore
from collection_sync.db import status_path
from collection_sync.models import AppConfig
from collection_sync.models import ConfigError
from collection_sync.models import NotFound
from collection_sync.models import PairResult
from collection_sync.models import PlanEntry
from collection_sync.models import RunSummary
from collection_sync.models import StorageError
from collection_sync.models import StorageUnavailable
from collection_sync.models import SyncError
from collection_sync.storage import Storage
from collection_sync.storage import storages_for_pair
from collection_sync.sync.apply import ChangeApplier
from collection_sync.sync.apply import count_action
from collection_sync.sync.conflicts import ConflictPolicy
from collection_sync.sync.conflicts import ConflictResolver
from collection_sync.sync.conflicts import always_defer
from collection_sync.sync.conflicts import effective_action
from collection_sync.sync.conflicts import get_policy
from collection_sync.sync.plan import build_plan
from collection_sync.sync.plan import identities_to_hash
from collection_sync.sync.utils import compute_hash

logger = logging.getLogger(__name__)


class PairSynchronizer:
    """Runs one collection pair: load, list, plan, resolve, apply, record."""

    def __init__(
        self,
        pair_id: str,
        storage_a: Storage,
        storage_b: Storage,
        store: StatusStore,
        policy: ConflictPolicy = always_defer,
        max_workers: int = 4,
        batch_size: int = 1,
    ):
        self.pair_id = pair_id
        self.storage_a = storage_a
        self.storage_b = storage_b
        self.store = store
        self.resolver = ConflictResolver(policy)
        self.max_workers = max_workers
        self.batch_size = batch_size

    def _list_both(self):
        logger.info(f"[{self.pair_id}] Listing {self.storage_a.name} and {self.storage_b.name}...")
        with ThreadPoolExecutor(max_workers=2) as pool:
            future_a = pool.submit(self.storage_a.list)
            future_b = pool.submit(self.storage_b.list)
            try:
                return future_a.result(), future_b.result()
            except StorageUnavailable as e:
                raise SyncError(f"Cannot list pair {self.pair_id}: {e}") from e

    def _hash_items(self, storage: Storage, identities: set[str]) -> dict[str, str]:
        if not identities:
            return {}

        def _hash_one(identity):
            try:
                content, _ = storage.fetch(identity)
            except NotFound:
                return identity, None
            except StorageError as e:
                logger.warning(f"Cannot hash {identity} from {storage.name}: {e}")
                return identity, None
            return identity, compute_hash(content)

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            results = list(pool.map(_hash_one, sorted(identities)))
        return {identity: digest for identity, digest in results if digest is not None}

    def plan(self) -> list[PlanEntry]:
        """Compute the resolved plan for the pair without changing anything."""
        logger.info(f"[{self.pair_id}] Loading sync state...")
        # CorruptStore propagates from here, before any storage is contacted.
        records = self.store.load(self.pair_id)

        listing_a, listing_b = self._list_both()
        logger.info(
            f"[{self.pair_id}] {len(listing_a)} item(s) on A, {len(listing_b)} on B, "
            f"{len(records)} record(s)"
        )

        want_a, want_b = identities_to_hash(records, listing_a, listing_b)
        hashes_a = self._hash_items(self.storage_a, want_a)
        hashes_b = self._hash_items(self.storage_b, want_b)

        plan = build_plan(self.pair_id, records, listing_a, listing_b, hashes_a, hashes_b)
        return self.resolver.resolve(plan)

    def run(
        self, dry_run: bool = False, cancel_event: threading.Event | None = None
    ) -> RunSummary:
        """Execute a full sync of the pair and return its summary.

        With dry_run the summary holds the counts the plan would produce;
        neither storage nor the status store is modified.
        """
        plan = self.plan()

        if dry_run:
            summary = RunSummary()
            for entry in plan:
                count_action(summary, entry, effective_action(entry))
            logger.info(f"[{self.pair_id}] Dry run: {_describe(summary)}")
            return summary

        logger.info(f"[{self.pair_id}] Applying changes...")
        applier = ChangeApplier(
            self.pair_id,
            self.storage_a,
            self.storage_b,
            self.store,
            max_workers=self.max_workers,
            batch_size=self.batch_size,
        )
        summary = applier.apply(plan, cancel_event=cancel_event)
        self.store.record_run(self.pair_id, summary)

        if summary.failures:
            logger.error(
                f"[{self.pair_id}] {summary.failed} item(s) failed: "
                f"{', '.join(summary.failed_ids)}"
            )
        logger.info(f"[{self.pair_id}] Done: {_describe(summary)}")
        return summary


def _describe(summary: RunSummary) -> str:
    if summary.is_empty():
        return "nothing to do"
    return (
        f"A +{summary.created_a} ~{summary.updated_a} -{summary.deleted_a}, "
        f"B +{summary.created_b} ~{summary.updated_b} -{summary.deleted_b}, "
        f"{summary.conflicts_resolved} conflict(s) resolved, "
        f"{summary.conflicts_deferred} deferred, {summary.failed} failed"
    )


def _sync_one(
    config: AppConfig,
    name: str,
    dry_run: bool,
    policy_override: str | None,
    cancel_event: threading.Event | None,
) -> PairResult:
    pair = config.pairs[name]
    try:
        policy = get_policy(policy_override or pair.conflict_policy)
        storage_a, storage_b = storages_for_pair(pair)
        with StatusStore(status_path(config.status_dir, name)) as store:
            synchronizer = PairSynchronizer(
                name,
                storage_a,
                storage_b,
                store,
                policy=policy,
                max_workers=config.max_workers,
                batch_size=config.batch_size,
            )
            summary = synchronizer.run(dry_run=dry_run, cancel_event=cancel_event)
    except SyncError as e:
        logger.error(f"[{name}] Sync aborted: {e}")
        return PairResult(name, error=e)
    return PairResult(name, summary=summary)


def sync_pairs(
    config: AppConfig,
    names: list[str] | None = None,
    dry_run: bool = False,
    policy_override: str | None = None,
    cancel_event: threading.Event | None = None,
) -> dict[str, PairResult]:
    """Synchronize the selected pairs (default: all) in parallel.

    Each pair has its own status database; an error in one pair is
    reported in its PairResult and does not affect the others.
    """
    # A pair must never run twice concurrently against its own status store.
    selected = list(dict.fromkeys(names)) if names else sorted(config.pairs)
    unknown = [name for name in selected if name not in config.pairs]
    if unknown:
        raise ConfigError(f"Unknown pair(s): {', '.join(unknown)}")
    if not selected:
        return {}

    with ThreadPoolExecutor(max_workers=len(selected)) as pool:
        futures = {
            name: pool.submit(_sync_one, config, name, dry_run, policy_override, cancel_event)
            for name in selected
        }
    return {name: future.result() for name, future in futures.items()}
