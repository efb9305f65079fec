"""Causal multi-device synchronization for replisync."""

from replisync.sync.conflict_resolver import determine_sync_status
from replisync.sync.device import LockOwner, hostname, load_device_id
from replisync.sync.errors import ErrorKind, SyncError, classify_error, describe_error
from replisync.sync.protocol import (
    ConflictData,
    ConflictDecision,
    ConflictReason,
    SyncMetadata,
    SyncOutcome,
    SyncResult,
    SyncStatus,
)
from replisync.sync.revision_store import InMemoryRevisionStore, RevisionStore, SQLiteRevisionStore
from replisync.sync.sync_engine import (
    AuthCodeRequest,
    ConflictRequest,
    EngineState,
    SyncEngine,
)
from replisync.sync.vector_clock import ClockOrdering, LamportClock, VectorClock

__all__ = [
    "determine_sync_status",
    "LockOwner",
    "hostname",
    "load_device_id",
    "ErrorKind",
    "SyncError",
    "classify_error",
    "describe_error",
    "ConflictData",
    "ConflictDecision",
    "ConflictReason",
    "SyncMetadata",
    "SyncOutcome",
    "SyncResult",
    "SyncStatus",
    "InMemoryRevisionStore",
    "RevisionStore",
    "SQLiteRevisionStore",
    "AuthCodeRequest",
    "ConflictRequest",
    "EngineState",
    "SyncEngine",
    "ClockOrdering",
    "LamportClock",
    "VectorClock",
]
