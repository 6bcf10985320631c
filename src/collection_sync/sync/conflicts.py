"""
Conflict policies and their translation into executable actions.

A policy is any callable ``policy(association_id, fingerprint_a,
fingerprint_b) -> Resolution``.  It is passed to the synchronizer per
pair, so pairs running side by side can use different policies.
"""

import logging
from collections.abc import Callable
from dataclasses import replace

from collection_sync.models import Action
from collection_sync.models import ConfigError
from collection_sync.models import PlanEntry
from collection_sync.models import Resolution

logger = logging.getLogger(__name__)

ConflictPolicy = Callable[[str, str | None, str | None], Resolution]


def prefer_a(
    association_id: str, fingerprint_a: str | None, fingerprint_b: str | None
) -> Resolution:
    return Resolution.PREFER_A


def prefer_b(
    association_id: str, fingerprint_a: str | None, fingerprint_b: str | None
) -> Resolution:
    return Resolution.PREFER_B


def always_defer(
    association_id: str, fingerprint_a: str | None, fingerprint_b: str | None
) -> Resolution:
    return Resolution.DEFER


POLICIES: dict[str, ConflictPolicy] = {
    "prefer-a": prefer_a,
    "prefer-b": prefer_b,
    "defer": always_defer,
}


def get_policy(name: str) -> ConflictPolicy:
    """Return the built-in policy registered under ``name``."""
    try:
        return POLICIES[name]
    except KeyError:
        raise ConfigError(
            f"Unknown conflict policy {name!r} (expected one of: {', '.join(POLICIES)})"
        ) from None


class ConflictResolver:
    """Asks the policy once for every conflict entry of a plan."""

    def __init__(self, policy: ConflictPolicy):
        self.policy = policy

    def resolve(self, plan: list[PlanEntry]) -> list[PlanEntry]:
        """Return a copy of plan where every conflict carries its resolution."""
        resolved = []
        for entry in plan:
            if entry.action is Action.CONFLICT and entry.resolution is None:
                resolution = self.policy(
                    entry.association_id, entry.fingerprint_a, entry.fingerprint_b
                )
                if not isinstance(resolution, Resolution):
                    raise TypeError(
                        f"Conflict policy returned {resolution!r}, expected a Resolution"
                    )
                if resolution is Resolution.DEFER:
                    logger.warning(
                        f"Conflict deferred for {entry.association_id} "
                        f"(A {entry.change_a.value}, B {entry.change_b.value})"
                    )
                else:
                    logger.info(f"Conflict on {entry.association_id} resolved: {resolution.value}")
                entry = replace(entry, resolution=resolution)
            resolved.append(entry)
        return resolved


def effective_action(entry: PlanEntry) -> Action:
    """Return the action to execute for an entry.

    Resolved conflicts become the copy or delete that makes the losing side
    match the winning one; deferred or unresolved conflicts become NO_OP.
    """
    if entry.action is not Action.CONFLICT:
        return entry.action
    if entry.resolution is None or entry.resolution is Resolution.DEFER:
        return Action.NO_OP

    a_present = entry.change_a.present
    b_present = entry.change_b.present

    if entry.resolution is Resolution.PREFER_A:
        if a_present and b_present:
            return Action.UPDATE_B_FROM_A
        if a_present:
            return Action.CREATE_ON_B
        if b_present:
            return Action.DELETE_ON_B
    else:
        if a_present and b_present:
            return Action.UPDATE_A_FROM_B
        if b_present:
            return Action.CREATE_ON_A
        if a_present:
            return Action.DELETE_ON_A
    return Action.NO_OP
