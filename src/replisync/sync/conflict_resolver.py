"""Sync status decision.

Classifies local versus remote metadata into a :class:`SyncStatus`. The
vector clock ordering decides the direction; the Lamport counters and the
last-synced markers are consistency checks that turn a suspicious ordering
into a conflict instead of a silent overwrite. Concurrent clocks always
escalate to a conflict.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import replace
from typing import Any, assert_never

from replisync.sync.errors import CanNotMigrateMajorDownError, SyncInvalidTimeValuesError
from replisync.sync.protocol import (
    CROSS_MODEL_VERSION,
    ConflictData,
    ConflictReason,
    SyncDecision,
    SyncMetadata,
    SyncStatus,
)
from replisync.sync.vector_clock import ClockOrdering, VectorClock

logger = logging.getLogger(__name__)


def ensure_supported_version(
    remote: SyncMetadata, supported_model_version: int = CROSS_MODEL_VERSION
) -> None:
    """Raise if the remote data model is newer than this client understands."""
    if remote.cross_model_version > supported_model_version:
        raise CanNotMigrateMajorDownError(
            f"Remote data model version {remote.cross_model_version} is newer than "
            f"supported version {supported_model_version}"
        )


def _copy_meta(meta: SyncMetadata) -> SyncMetadata:
    last_synced = meta.last_synced_vector_clock
    return replace(
        meta,
        vector_clock=VectorClock(meta.vector_clock.counters),
        last_synced_vector_clock=VectorClock(last_synced.counters) if last_synced else None,
        revision_map=dict(meta.revision_map),
    )


def _conflict(
    local: SyncMetadata,
    remote: SyncMetadata,
    reason: ConflictReason,
    ordering: ClockOrdering,
) -> SyncDecision:
    last_synced = local.last_synced_vector_clock
    additional: dict[str, Any] = {
        "ordering": str(ordering),
        "local_lamport": local.lamport,
        "remote_lamport": remote.lamport,
        "local_vector_clock": local.vector_clock.to_dict(),
        "remote_vector_clock": remote.vector_clock.to_dict(),
        "last_synced_vector_clock": last_synced.to_dict() if last_synced else None,
    }
    logger.info(
        "Sync conflict (%s): local %s vs remote %s", reason, local.vector_clock, remote.vector_clock
    )
    return SyncDecision(
        status=SyncStatus.CONFLICT,
        conflict=ConflictData(
            local=_copy_meta(local),
            remote=_copy_meta(remote),
            reason=reason,
            additional=additional,
        ),
    )


def _needs_full_resync(local: SyncMetadata, remote: SyncMetadata) -> bool:
    return (
        local.last_synced_vector_clock is None
        or local.cross_model_version != remote.cross_model_version
    )


def _advanced_since(clock: VectorClock, last_synced: VectorClock) -> bool:
    return clock.compare(last_synced) == ClockOrdering.AFTER


def _concurrent_reason(local: SyncMetadata, remote: SyncMetadata) -> ConflictReason:
    last_synced = local.last_synced_vector_clock
    if last_synced is None:
        # Synced before, but the synced clock is gone
        if local.last_synced_update is not None:
            return ConflictReason.NO_LAST_SYNC
        return ConflictReason.CONCURRENT_EDIT
    if _advanced_since(local.vector_clock, last_synced) and _advanced_since(
        remote.vector_clock, last_synced
    ):
        return ConflictReason.BOTH_CHANGED_SINCE_LAST_SYNC
    return ConflictReason.CONCURRENT_EDIT


def determine_sync_status(
    local: SyncMetadata,
    remote: SyncMetadata | None,
    *,
    missing_remote_files: Iterable[str] = (),
    supported_model_version: int = CROSS_MODEL_VERSION,
) -> SyncDecision:
    """Decide what one sync attempt has to do.

    Args:
        local: Snapshot of the local replica.
        remote: Snapshot published in the remote meta file, or None when the
            remote is absent or unconfigured.
        missing_remote_files: Companion files the remote meta references but
            the remote folder does not contain.
        supported_model_version: Highest remote data model version accepted.

    Returns:
        The status, plus conflict data when the replicas cannot be ordered.

    Raises:
        SyncInvalidTimeValuesError: The local last-synced timestamp lies after
            its last update.
        CanNotMigrateMajorDownError: The remote data model is too new.
    """
    if remote is None:
        return SyncDecision(status=SyncStatus.NOT_CONFIGURED)

    missing = sorted(missing_remote_files)
    if missing:
        logger.warning("Remote data is incomplete, missing: %s", missing)
        return SyncDecision(status=SyncStatus.INCOMPLETE_REMOTE_DATA)

    if (
        local.last_update is not None
        and local.last_synced_update is not None
        and local.last_synced_update > local.last_update
    ):
        raise SyncInvalidTimeValuesError(
            f"Last sync ({local.last_synced_update.isoformat()}) is after last local update "
            f"({local.last_update.isoformat()})"
        )

    ensure_supported_version(remote, supported_model_version)

    ordering = local.vector_clock.compare(remote.vector_clock)
    match ordering:
        case ClockOrdering.EQUAL:
            if local.lamport == remote.lamport:
                return SyncDecision(status=SyncStatus.IN_SYNC)
            return _conflict(local, remote, ConflictReason.CLOCK_MISMATCH, ordering)

        case ClockOrdering.BEFORE:
            if remote.lamport < local.lamport:
                return _conflict(
                    local, remote, ConflictReason.REMOTE_LAMPORT_BEHIND_LOCAL, ordering
                )
            last_synced = local.last_synced_vector_clock
            if (
                local.has_unsynced_changes
                and last_synced is not None
                and _advanced_since(local.vector_clock, last_synced)
            ):
                return _conflict(
                    local, remote, ConflictReason.BOTH_CHANGED_SINCE_LAST_SYNC, ordering
                )
            if _needs_full_resync(local, remote):
                return SyncDecision(status=SyncStatus.UPDATE_LOCAL_ALL)
            return SyncDecision(status=SyncStatus.UPDATE_LOCAL)

        case ClockOrdering.AFTER:
            if remote.lamport > local.lamport:
                return _conflict(local, remote, ConflictReason.CLOCK_MISMATCH, ordering)
            if _needs_full_resync(local, remote):
                return SyncDecision(status=SyncStatus.UPDATE_REMOTE_ALL)
            return SyncDecision(status=SyncStatus.UPDATE_REMOTE)

        case ClockOrdering.CONCURRENT:
            return _conflict(local, remote, _concurrent_reason(local, remote), ordering)

        case _:
            assert_never(ordering)
