"""
Shared pytest fixtures and item helpers.
"""

import itertools

import pytest

from collection_sync.db import StatusStore
from collection_sync.sync import PairSynchronizer
from collection_sync.sync.conflicts import always_defer
from tests.fake_storage import FakeStorage

PAIR_ID = "calendar"


def make_vevent(uid: str, summary: str = "Test Event") -> bytes:
    """Return a minimal VCALENDAR item as raw bytes."""
    return (
        f"BEGIN:VCALENDAR\r\n"
        f"VERSION:2.0\r\n"
        f"BEGIN:VEVENT\r\n"
        f"UID:{uid}\r\n"
        f"SUMMARY:{summary}\r\n"
        f"DTSTART:20260301T100000Z\r\n"
        f"DTEND:20260301T110000Z\r\n"
        f"DTSTAMP:20260224T000000Z\r\n"
        f"END:VEVENT\r\n"
        f"END:VCALENDAR\r\n"
    ).encode()


def make_vcard(uid: str, name: str = "Jane Doe") -> bytes:
    """Return a minimal vCard item as raw bytes."""
    return (f"BEGIN:VCARD\r\nVERSION:3.0\r\nUID:{uid}\r\nFN:{name}\r\nEND:VCARD\r\n").encode()


def uid_of(content: bytes) -> str:
    """Identity a server would assign: the item's UID."""
    for line in content.decode().splitlines():
        if line.startswith("UID:"):
            return line[4:]
    raise ValueError("item has no UID")


@pytest.fixture
def status_path(tmp_path):
    return tmp_path / "status" / f"{PAIR_ID}.db"


@pytest.fixture
def store(status_path):
    with StatusStore(status_path) as s:
        yield s


@pytest.fixture
def etags():
    """Fingerprint counter shared by both sides, so fingerprints never collide by accident."""
    return itertools.count(1)


@pytest.fixture
def side_a(etags):
    return FakeStorage("A", etags=etags, identity_for=uid_of)


@pytest.fixture
def side_b(etags):
    return FakeStorage("B", etags=etags, identity_for=uid_of)


@pytest.fixture
def make_sync(side_a, side_b, store):
    """Build a PairSynchronizer over the two fake sides and the real status store."""

    def _make(policy=always_defer, **kwargs) -> PairSynchronizer:
        return PairSynchronizer(PAIR_ID, side_a, side_b, store, policy=policy, **kwargs)

    return _make
