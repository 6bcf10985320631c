"""
Pure data models: no sqlite or storage imports.
"""

from dataclasses import dataclass
from dataclasses import field
from enum import Enum
from pathlib import Path

DEFAULT_STATUS_DIR = Path.home() / ".local/share/collection-sync"
DEFAULT_CONFIG = Path.home() / ".config/collection-sync.conf"


class SyncError(Exception):
    """Base exception for collection sync errors."""

    pass


class ConfigError(SyncError):
    """The configuration file is missing values or holds invalid ones."""


class CorruptStore(SyncError):
    """Persisted status data cannot be parsed or violates record invariants."""


class StorageError(SyncError):
    """Base exception raised by storage adapters."""

    def __init__(self, message: str, identity: str | None = None):
        super().__init__(message)
        self.identity = identity


class StorageUnavailable(StorageError):
    """The collection or item could not be reached (IO or transport failure)."""


class NotFound(StorageError):
    """The identity no longer exists in the storage."""


class PreconditionFailed(StorageError):
    """The stored fingerprint does not match the expected one."""


class ReadOnlyError(StorageError):
    """A mutation was attempted on a read-only storage."""


class Action(str, Enum):
    CREATE_ON_A = "create_on_a"
    CREATE_ON_B = "create_on_b"
    UPDATE_A_FROM_B = "update_a_from_b"
    UPDATE_B_FROM_A = "update_b_from_a"
    DELETE_ON_A = "delete_on_a"
    DELETE_ON_B = "delete_on_b"
    CONFLICT = "conflict"
    NO_OP = "no_op"


class StatusChange(str, Enum):
    """Record bookkeeping for entries that need no storage mutation."""

    NONE = "none"
    FORGET = "forget"  # previously paired, now gone from both sides
    REFRESH = "refresh"  # both sides already hold the same content


class Resolution(str, Enum):
    PREFER_A = "prefer_a"
    PREFER_B = "prefer_b"
    DEFER = "defer"


class FailureReason(str, Enum):
    UNAVAILABLE = "unavailable"
    LOST_RACE = "lost_race"
    READ_ONLY = "read_only"
    ERROR = "error"


class Change(str, Enum):
    """Presence and change of one side of an association since the last sync."""

    ABSENT = "absent"
    ADDED = "added"
    UNCHANGED = "unchanged"
    CHANGED = "changed"
    DELETED = "deleted"

    @property
    def present(self) -> bool:
        return self in (Change.ADDED, Change.UNCHANGED, Change.CHANGED)


@dataclass(frozen=True)
class ItemRef:
    """One entry of a storage listing."""

    identity: str
    fingerprint: str


@dataclass(frozen=True)
class StatusRecord:
    """Last synchronized state of one association."""

    association_id: str
    identity_a: str | None
    identity_b: str | None
    fingerprint_a: str | None
    fingerprint_b: str | None

    @property
    def paired(self) -> bool:
        return self.identity_a is not None and self.identity_b is not None


@dataclass(frozen=True)
class PlanEntry:
    """Planned action for one association."""

    association_id: str
    action: Action
    change_a: Change
    change_b: Change
    identity_a: str | None = None
    identity_b: str | None = None
    fingerprint_a: str | None = None
    fingerprint_b: str | None = None
    status_change: StatusChange = StatusChange.NONE
    resolution: Resolution | None = None


@dataclass
class RunSummary:
    """Outcome of one collection-pair run."""

    created_a: int = 0
    created_b: int = 0
    updated_a: int = 0
    updated_b: int = 0
    deleted_a: int = 0
    deleted_b: int = 0
    conflicts_resolved: int = 0
    conflicts_deferred: int = 0
    deferred_ids: list[str] = field(default_factory=list)
    failures: dict[str, FailureReason] = field(default_factory=dict)
    cancelled: bool = False

    @property
    def failed(self) -> int:
        return len(self.failures)

    @property
    def failed_ids(self) -> list[str]:
        return sorted(self.failures)

    def is_empty(self) -> bool:
        return not (
            self.created_a
            or self.created_b
            or self.updated_a
            or self.updated_b
            or self.deleted_a
            or self.deleted_b
            or self.conflicts_resolved
            or self.conflicts_deferred
            or self.failures
        )

    def as_dict(self) -> dict:
        return {
            "created_a": self.created_a,
            "created_b": self.created_b,
            "updated_a": self.updated_a,
            "updated_b": self.updated_b,
            "deleted_a": self.deleted_a,
            "deleted_b": self.deleted_b,
            "conflicts_resolved": self.conflicts_resolved,
            "conflicts_deferred": self.conflicts_deferred,
            "failed": self.failed,
            "deferred_ids": sorted(self.deferred_ids),
            "failures": {k: v.value for k, v in sorted(self.failures.items())},
            "cancelled": self.cancelled,
        }


@dataclass
class PairConfig:
    """Configuration for one collection pair."""

    name: str
    path_a: Path
    path_b: Path
    extension: str = "ics"
    conflict_policy: str = "defer"
    read_only: str | None = None  # 'a', 'b' or None
    create_missing: bool = False


@dataclass
class AppConfig:
    """Configuration for a sync invocation."""

    status_dir: Path = field(default_factory=lambda: DEFAULT_STATUS_DIR)
    max_workers: int = 4
    batch_size: int = 1
    pairs: dict[str, PairConfig] = field(default_factory=dict)


@dataclass
class PairResult:
    """Outcome of one pair in a multi-pair run: a summary, or the error that aborted it."""

    name: str
    summary: RunSummary | None = None
    error: SyncError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.summary is not None and not self.summary.failures
