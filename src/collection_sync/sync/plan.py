"""
Diff planning: compare fresh listings against the status records.
"""

import logging
from dataclasses import dataclass

from collection_sync.models import Action
from collection_sync.models import Change
from collection_sync.models import CorruptStore
from collection_sync.models import ItemRef
from collection_sync.models import PlanEntry
from collection_sync.models import StatusChange
from collection_sync.models import StatusRecord
from collection_sync.models import SyncError
from collection_sync.sync.utils import association_id_for

logger = logging.getLogger(__name__)

_ABSENT = Change.ABSENT
_ADDED = Change.ADDED
_UNCHANGED = Change.UNCHANGED
_CHANGED = Change.CHANGED
_DELETED = Change.DELETED

# (change on A, change on B) -> action.  Combinations pairing ADDED with a
# recorded side cannot come out of build_plan(); they map to CONFLICT so
# that nothing is overwritten if they ever do.
ACTION_TABLE: dict[tuple[Change, Change], Action] = {
    (_ABSENT, _ABSENT): Action.NO_OP,
    (_ABSENT, _ADDED): Action.CREATE_ON_A,
    (_ABSENT, _UNCHANGED): Action.CREATE_ON_A,
    (_ABSENT, _CHANGED): Action.CREATE_ON_A,
    (_ABSENT, _DELETED): Action.NO_OP,
    (_ADDED, _ABSENT): Action.CREATE_ON_B,
    (_ADDED, _ADDED): Action.CONFLICT,
    (_ADDED, _UNCHANGED): Action.CONFLICT,
    (_ADDED, _CHANGED): Action.CONFLICT,
    (_ADDED, _DELETED): Action.CREATE_ON_B,
    (_UNCHANGED, _ABSENT): Action.CREATE_ON_B,
    (_UNCHANGED, _ADDED): Action.CONFLICT,
    (_UNCHANGED, _UNCHANGED): Action.NO_OP,
    (_UNCHANGED, _CHANGED): Action.UPDATE_A_FROM_B,
    (_UNCHANGED, _DELETED): Action.DELETE_ON_A,
    (_CHANGED, _ABSENT): Action.CREATE_ON_B,
    (_CHANGED, _ADDED): Action.CONFLICT,
    (_CHANGED, _UNCHANGED): Action.UPDATE_B_FROM_A,
    (_CHANGED, _CHANGED): Action.CONFLICT,
    (_CHANGED, _DELETED): Action.CONFLICT,  # edit vs delete
    (_DELETED, _ABSENT): Action.NO_OP,
    (_DELETED, _ADDED): Action.CREATE_ON_A,
    (_DELETED, _UNCHANGED): Action.DELETE_ON_B,
    (_DELETED, _CHANGED): Action.CONFLICT,  # delete vs edit
    (_DELETED, _DELETED): Action.NO_OP,
}

# Execution order of plan entries.
ACTION_ORDER = {
    Action.CREATE_ON_A: 0,
    Action.CREATE_ON_B: 0,
    Action.UPDATE_A_FROM_B: 1,
    Action.UPDATE_B_FROM_A: 1,
    Action.CONFLICT: 2,
    Action.DELETE_ON_A: 3,
    Action.DELETE_ON_B: 3,
    Action.NO_OP: 4,
}


def classify(current: str | None, previous: str | None) -> Change:
    """Return the change of one side given its current and last-synced fingerprint."""
    if current is None:
        return _ABSENT if previous is None else _DELETED
    if previous is None:
        return _ADDED
    return _UNCHANGED if current == previous else _CHANGED


@dataclass
class _Association:
    association_id: str
    identity_a: str | None
    identity_b: str | None
    record: StatusRecord | None = None


def _index_listing(listing: list[ItemRef], side: str) -> dict[str, str]:
    index = {}
    for ref in listing:
        if ref.identity in index:
            raise SyncError(f"Side {side} listed identity {ref.identity!r} twice")
        index[ref.identity] = ref.fingerprint
    return index


def _claimed_identities(records: dict[str, StatusRecord]) -> tuple[set[str], set[str]]:
    claimed_a: set[str] = set()
    claimed_b: set[str] = set()
    for record in records.values():
        for identity, claimed, side in (
            (record.identity_a, claimed_a, "A"),
            (record.identity_b, claimed_b, "B"),
        ):
            if identity is None:
                continue
            if identity in claimed:
                raise CorruptStore(
                    f"Identity {identity!r} on side {side} belongs to more than one record"
                )
            claimed.add(identity)
    return claimed_a, claimed_b


def identities_to_hash(
    records: dict[str, StatusRecord],
    listing_a: list[ItemRef],
    listing_b: list[ItemRef],
) -> tuple[set[str], set[str]]:
    """Return the identities on each side whose content hash the planner can use.

    Two groups need it:

    - unrecorded items, when both sides hold some: equal content pairs
      them up instead of creating duplicates;
    - recorded items changed on both sides to different fingerprints:
      equal content means both sides already agree (e.g. an update whose
      status commit was lost), not a conflict.
    """
    claimed_a, claimed_b = _claimed_identities(records)
    cur_a = _index_listing(listing_a, "A")
    cur_b = _index_listing(listing_b, "B")

    want_a: set[str] = set()
    want_b: set[str] = set()

    new_a = set(cur_a) - claimed_a
    new_b = set(cur_b) - claimed_b
    if new_a and new_b:
        trivially_identical = {i for i in new_a & new_b if cur_a[i] == cur_b[i]}
        want_a |= new_a - trivially_identical
        want_b |= new_b - trivially_identical

    for record in records.values():
        if not record.paired:
            continue
        fp_a = cur_a.get(record.identity_a)
        fp_b = cur_b.get(record.identity_b)
        if (
            classify(fp_a, record.fingerprint_a) is _CHANGED
            and classify(fp_b, record.fingerprint_b) is _CHANGED
            and fp_a != fp_b
        ):
            want_a.add(record.identity_a)
            want_b.add(record.identity_b)

    return want_a, want_b


def _associate(
    pair_id: str,
    records: dict[str, StatusRecord],
    cur_a: dict[str, str],
    cur_b: dict[str, str],
    hashes_a: dict[str, str],
    hashes_b: dict[str, str],
) -> list[_Association]:
    claimed_a, claimed_b = _claimed_identities(records)
    associations = [
        _Association(r.association_id, r.identity_a, r.identity_b, record=r)
        for r in records.values()
    ]

    new_a = sorted(set(cur_a) - claimed_a)
    new_b = set(cur_b) - claimed_b

    # Same identity on both sides: the item was created independently, or
    # the status store was reset.
    remaining_a = []
    for identity in new_a:
        if identity not in new_b:
            remaining_a.append(identity)
            continue
        new_b.discard(identity)
        associations.append(
            _Association(association_id_for(pair_id, "a", identity), identity, identity)
        )

    # Byte-identical content under different identities: typically a copy
    # whose status commit was lost in a crash.
    by_hash_b: dict[str, list[str]] = {}
    for identity in sorted(new_b):
        if identity in hashes_b:
            by_hash_b.setdefault(hashes_b[identity], []).append(identity)

    for identity in remaining_a:
        candidates = by_hash_b.get(hashes_a.get(identity, ""), [])
        if candidates:
            identity_b = candidates.pop(0)
            new_b.discard(identity_b)
            logger.info(f"Pairing unrecorded items with equal content: {identity} <-> {identity_b}")
            associations.append(
                _Association(association_id_for(pair_id, "a", identity), identity, identity_b)
            )
        else:
            associations.append(
                _Association(association_id_for(pair_id, "a", identity), identity, None)
            )

    for identity in sorted(new_b):
        associations.append(
            _Association(association_id_for(pair_id, "b", identity), None, identity)
        )

    return associations


def _same_content(
    assoc: _Association,
    fp_a: str,
    fp_b: str,
    hashes_a: dict[str, str],
    hashes_b: dict[str, str],
) -> bool:
    if fp_a == fp_b:
        return True
    hash_a = hashes_a.get(assoc.identity_a)
    return hash_a is not None and hash_a == hashes_b.get(assoc.identity_b)


def _plan_association(
    assoc: _Association,
    cur_a: dict[str, str],
    cur_b: dict[str, str],
    hashes_a: dict[str, str],
    hashes_b: dict[str, str],
) -> PlanEntry:
    record = assoc.record
    prev_a = record.fingerprint_a if record else None
    prev_b = record.fingerprint_b if record else None
    fp_a = cur_a.get(assoc.identity_a) if assoc.identity_a is not None else None
    fp_b = cur_b.get(assoc.identity_b) if assoc.identity_b is not None else None

    change_a = classify(fp_a, prev_a)
    change_b = classify(fp_b, prev_b)
    action = ACTION_TABLE[(change_a, change_b)]
    status_change = StatusChange.NONE

    if action is Action.CONFLICT:
        # Both sides present with provably equal content: nothing to copy,
        # only the record needs the current fingerprints.
        if (
            change_a.present
            and change_b.present
            and _same_content(assoc, fp_a, fp_b, hashes_a, hashes_b)
        ):
            action = Action.NO_OP
            status_change = StatusChange.REFRESH
    elif action is Action.NO_OP and record is not None and not (
        change_a.present or change_b.present
    ):
        status_change = StatusChange.FORGET

    return PlanEntry(
        association_id=assoc.association_id,
        action=action,
        change_a=change_a,
        change_b=change_b,
        identity_a=assoc.identity_a,
        identity_b=assoc.identity_b,
        fingerprint_a=fp_a,
        fingerprint_b=fp_b,
        status_change=status_change,
    )


def build_plan(
    pair_id: str,
    records: dict[str, StatusRecord],
    listing_a: list[ItemRef],
    listing_b: list[ItemRef],
    hashes_a: dict[str, str] | None = None,
    hashes_b: dict[str, str] | None = None,
) -> list[PlanEntry]:
    """Compute one plan entry per association.

    ``records`` is the status snapshot (read-only here). ``hashes_a`` and
    ``hashes_b`` optionally map identities to content hashes (see
    identities_to_hash()).
    """
    hashes_a = hashes_a or {}
    hashes_b = hashes_b or {}
    cur_a = _index_listing(listing_a, "A")
    cur_b = _index_listing(listing_b, "B")
    associations = _associate(pair_id, records, cur_a, cur_b, hashes_a, hashes_b)

    plan = [
        _plan_association(assoc, cur_a, cur_b, hashes_a, hashes_b) for assoc in associations
    ]
    plan.sort(key=lambda e: (ACTION_ORDER[e.action], e.association_id))

    for entry in plan:
        if entry.action is not Action.NO_OP or entry.status_change is not StatusChange.NONE:
            logger.debug(
                f"{entry.association_id}: A {entry.change_a.value}, B {entry.change_b.value} "
                f"-> {entry.action.value} ({entry.status_change.value})"
            )
    return plan


def count_actions(plan: list[PlanEntry]) -> dict[Action, int]:
    counts = {action: 0 for action in Action}
    for entry in plan:
        counts[entry.action] += 1
    return counts
