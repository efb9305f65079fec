"""Sync protocol data structures shared by the resolver, engine and providers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from replisync.sync.errors import ErrorKind, InvalidDataError
from replisync.sync.vector_clock import VectorClock
from replisync.utils.timeutils import parse_timestamp

RemoteFileRevision = str

# Highest remote data model version this client can read
CROSS_MODEL_VERSION = 1


class SyncStatus(StrEnum):
    """Terminal classification of one sync attempt."""

    IN_SYNC = "InSync"
    UPDATE_REMOTE = "UpdateRemote"
    UPDATE_REMOTE_ALL = "UpdateRemoteAll"
    UPDATE_LOCAL = "UpdateLocal"
    UPDATE_LOCAL_ALL = "UpdateLocalAll"
    CONFLICT = "Conflict"
    NOT_CONFIGURED = "NotConfigured"
    INCOMPLETE_REMOTE_DATA = "IncompleteRemoteData"


class ConflictReason(StrEnum):
    """Why local and remote state could not be ordered."""

    CONCURRENT_EDIT = "concurrent-edit"
    BOTH_CHANGED_SINCE_LAST_SYNC = "both-changed-since-last-sync"
    REMOTE_LAMPORT_BEHIND_LOCAL = "remote-lamport-behind-local"
    CLOCK_MISMATCH = "clock-mismatch"
    NO_LAST_SYNC = "no-last-sync"


class ConflictDecision(StrEnum):
    """Caller's answer to a pending conflict."""

    USE_LOCAL = "USE_LOCAL"
    USE_REMOTE = "USE_REMOTE"
    CANCEL = "CANCEL"


class SyncOutcome(StrEnum):
    """How a call to ``SyncEngine.sync()`` ended."""

    COMPLETED = "completed"
    ALREADY_IN_PROGRESS = "already_in_progress"
    FAILED = "failed"
    SUPERSEDED = "superseded"


class ResourceType(StrEnum):
    FILE = "file"
    COLLECTION = "collection"


@dataclass(frozen=True)
class SyncMetadata:
    """Immutable snapshot of one replica's causal state."""

    vector_clock: VectorClock = field(default_factory=VectorClock)
    lamport: int = 0
    last_update: datetime | None = None
    last_synced_update: datetime | None = None
    last_synced_vector_clock: VectorClock | None = None
    revision_map: dict[str, str] = field(default_factory=dict)
    cross_model_version: int = CROSS_MODEL_VERSION
    encrypted: bool = False
    encryption_salt: str | None = None
    device_id: str | None = None

    @property
    def has_unsynced_changes(self) -> bool:
        """Local edits happened after the last successful sync."""
        if self.last_update is None:
            return False
        if self.last_synced_update is None:
            return True
        return self.last_update > self.last_synced_update

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "vector_clock": self.vector_clock.to_dict(),
            "lamport": self.lamport,
            "last_update": self.last_update.isoformat() if self.last_update else None,
            "revision_map": dict(self.revision_map),
            "cross_model_version": self.cross_model_version,
            "encrypted": self.encrypted,
        }
        if self.encryption_salt:
            data["encryption_salt"] = self.encryption_salt
        if self.device_id:
            data["device_id"] = self.device_id
        if self.last_synced_update is not None:
            data["last_synced_update"] = self.last_synced_update.isoformat()
        if self.last_synced_vector_clock is not None:
            data["last_synced_vector_clock"] = self.last_synced_vector_clock.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncMetadata:
        """Build from a decoded meta document. Raises InvalidDataError on bad input."""
        try:
            last_synced_raw = data.get("last_synced_vector_clock")
            return cls(
                vector_clock=VectorClock.from_dict(data.get("vector_clock")),
                lamport=int(data.get("lamport", 0)),
                last_update=parse_timestamp(data.get("last_update")),
                last_synced_update=parse_timestamp(data.get("last_synced_update")),
                last_synced_vector_clock=(
                    VectorClock.from_dict(last_synced_raw) if last_synced_raw is not None else None
                ),
                revision_map={str(k): str(v) for k, v in (data.get("revision_map") or {}).items()},
                cross_model_version=int(data.get("cross_model_version", CROSS_MODEL_VERSION)),
                encrypted=bool(data.get("encrypted", False)),
                encryption_salt=data.get("encryption_salt"),
                device_id=data.get("device_id"),
            )
        except (TypeError, ValueError, AttributeError) as e:
            raise InvalidDataError(f"Invalid sync metadata: {e}") from e


@dataclass(frozen=True)
class ConflictData:
    """Local and remote snapshots that could not be ordered."""

    local: SyncMetadata
    remote: SyncMetadata
    reason: ConflictReason
    additional: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SyncDecision:
    """Resolver output: a status plus conflict details when ambiguous."""

    status: SyncStatus
    conflict: ConflictData | None = None


@dataclass(frozen=True)
class RemoteFileMeta:
    """Metadata of a single remote resource."""

    filename: str
    basename: str
    last_modified: str
    size: int
    resource_type: ResourceType
    revision: RemoteFileRevision | None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def is_collection(self) -> bool:
        return self.resource_type == ResourceType.COLLECTION


@dataclass(frozen=True)
class DownloadResult:
    """Body and revision returned by a (conditional) download."""

    revision: RemoteFileRevision
    data: bytes | None
    not_modified: bool = False

    @property
    def text(self) -> str:
        return (self.data or b"").decode("utf-8")


@dataclass(frozen=True)
class SyncResult:
    """Outcome of one ``SyncEngine.sync()`` call."""

    outcome: SyncOutcome
    status: SyncStatus | None = None
    conflict_data: ConflictData | None = None
    decision: ConflictDecision | None = None
    error_kind: ErrorKind | None = None
    error: BaseException | None = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.outcome == SyncOutcome.COMPLETED
