"""
Stateless helpers shared by the planner and the orchestrator.
"""

import hashlib
import uuid

# Namespace for association ids derived from a new item's identity.
_ASSOCIATION_NS = uuid.UUID("6f1c1f0e-4a8e-4a57-9d0e-2b8f1c5e7a31")


def compute_hash(content: bytes) -> str:
    """Return the SHA-256 hex digest of an item's raw content."""
    return hashlib.sha256(content).hexdigest()


def association_id_for(pair_id: str, side: str, identity: str) -> str:
    """Return a stable association id for an item first seen on ``side``.

    The same new item gets the same id on every run until a record is
    committed for it, so deferred conflicts and failed creates resurface
    under an unchanged id.
    """
    return uuid.uuid5(_ASSOCIATION_NS, f"{pair_id}\x00{side}\x00{identity}").hex
