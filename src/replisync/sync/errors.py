"""Error taxonomy for sync operations.

Every error raised by the protocol client or the sync engine derives from
:class:`SyncError` and carries an :class:`ErrorKind`. Callers branch on the
kind rather than on the concrete class; :func:`describe_error_kind` is the
exhaustive matcher, so a new kind fails type checking until it is handled.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any, ClassVar, assert_never


class ErrorKind(StrEnum):
    """Classification of a failed sync attempt."""

    AUTH_FAILURE = "auth_failure"
    NO_ETAG = "no_etag"
    REMOTE_NOT_FOUND = "remote_not_found"
    REVISION_MISMATCH = "revision_mismatch"
    LOCK_PRESENT = "lock_present"
    DECRYPTION = "decryption"
    INVALID_TIME_VALUES = "invalid_time_values"
    VERSION_DOWNGRADE = "version_downgrade"
    PARTIAL_DELETION = "partial_deletion"
    ALREADY_IN_PROGRESS = "already_in_progress"
    LOCAL_CHANGED = "local_changed"
    UNKNOWN = "unknown"


class SyncError(Exception):
    """Base class for all sync errors."""

    kind: ClassVar[ErrorKind] = ErrorKind.UNKNOWN

    def __init__(self, message: str = "", *, additional_log: Any = None) -> None:
        super().__init__(message or self.__class__.__name__)
        self.additional_log = additional_log


# ── Authentication / configuration ──────────────────────────────────────────


class AuthFailSPError(SyncError):
    """The storage provider rejected the configured credentials (401/403)."""

    kind = ErrorKind.AUTH_FAILURE


class MissingCredentialsSPError(AuthFailSPError):
    """The provider configuration is incomplete (no URL, user or password)."""


# ── Remote protocol ─────────────────────────────────────────────────────────


class NetworkAPIError(SyncError):
    """The request never produced an HTTP response (connection, timeout)."""

    def __init__(self, method: str, path: str, cause: BaseException) -> None:
        super().__init__(f"{method} {path} failed: {str(cause) or cause.__class__.__name__}")
        self.method = method
        self.path = path


class HttpNotOkAPIError(SyncError):
    """The server answered with an unexpected non-success status."""

    def __init__(self, status: int, path: str, body: str = "") -> None:
        super().__init__(f"HTTP {status} for {path}")
        self.status = status
        self.path = path
        self.body = body


class RemoteFileNotFoundAPIError(SyncError):
    """The requested remote resource does not exist."""

    kind = ErrorKind.REMOTE_NOT_FOUND

    def __init__(self, path: str, message: str = "") -> None:
        super().__init__(message or f"Remote file not found: {path}")
        self.path = path


class NoRemoteModelFileError(RemoteFileNotFoundAPIError):
    """A model file listed in the remote revision map is missing."""

    def __init__(self, model_id: str, path: str) -> None:
        super().__init__(path, f"Remote model file missing: {model_id}")
        self.model_id = model_id
        self.additional_log = model_id


class NoEtagAPIError(SyncError):
    """A write succeeded but its revision could not be determined."""

    kind = ErrorKind.NO_ETAG

    def __init__(self, path: str = "", message: str = "") -> None:
        super().__init__(message or f"No revision obtainable for {path}")
        self.path = path


class RevMismatchAPIError(SyncError):
    """A conditional write or delete failed its revision precondition."""

    kind = ErrorKind.REVISION_MISMATCH

    def __init__(self, path: str, expected: str | None = None, actual: str | None = None) -> None:
        super().__init__(f"Revision mismatch for {path}")
        self.path = path
        self.expected = expected
        self.actual = actual


class RevMismatchForModelError(RevMismatchAPIError):
    """A downloaded model does not carry the revision the meta file announced."""

    def __init__(self, model_id: str, path: str, expected: str | None, actual: str | None) -> None:
        super().__init__(path, expected, actual)
        self.model_id = model_id
        self.additional_log = model_id


class PartialDeletionError(SyncError):
    """Some children of a collection could not be deleted."""

    kind = ErrorKind.PARTIAL_DELETION

    def __init__(self, path: str, failed: list[str] | None = None) -> None:
        super().__init__(f"Partial deletion failure for: {path}")
        self.path = path
        self.failed = failed or []


class LockPresentError(SyncError):
    """Another device is currently writing to the remote store."""

    kind = ErrorKind.LOCK_PRESENT


# ── Payload / state ─────────────────────────────────────────────────────────


class DecryptError(SyncError):
    """Remote data could not be decrypted with the configured passphrase."""

    kind = ErrorKind.DECRYPTION


class DecryptNoPasswordError(DecryptError):
    """Encrypted data must be read or written but no passphrase is configured."""


class InvalidDataError(SyncError):
    """Remote metadata could not be parsed."""


class SyncInvalidTimeValuesError(SyncError):
    """Replica timestamps are incoherent; ordering cannot be trusted."""

    kind = ErrorKind.INVALID_TIME_VALUES


class CanNotMigrateMajorDownError(SyncError):
    """Remote data uses a newer model version than this client supports."""

    kind = ErrorKind.VERSION_DOWNGRADE


class LocalChangedDuringSyncError(SyncError):
    """A local edit was recorded while remote data was being installed."""

    kind = ErrorKind.LOCAL_CHANGED


def classify_error(exc: BaseException) -> ErrorKind:
    """Map any exception onto an :class:`ErrorKind`."""
    if isinstance(exc, SyncError):
        return exc.kind
    return ErrorKind.UNKNOWN


def describe_error_kind(kind: ErrorKind) -> str:
    """Return a human-readable description for an error kind."""
    match kind:
        case ErrorKind.AUTH_FAILURE:
            return "Authentication with the storage provider failed"
        case ErrorKind.NO_ETAG:
            return "Upload succeeded but its revision could not be verified"
        case ErrorKind.REMOTE_NOT_FOUND:
            return "Remote file not found"
        case ErrorKind.REVISION_MISMATCH:
            return "Remote data changed concurrently"
        case ErrorKind.LOCK_PRESENT:
            return "Remote data is currently being written by another device"
        case ErrorKind.DECRYPTION:
            return "Encrypted data could not be processed"
        case ErrorKind.INVALID_TIME_VALUES:
            return "Timestamps across devices are incoherent"
        case ErrorKind.VERSION_DOWNGRADE:
            return "Remote data was written by a newer version"
        case ErrorKind.PARTIAL_DELETION:
            return "Some remote files could not be deleted"
        case ErrorKind.ALREADY_IN_PROGRESS:
            return "Sync already in progress"
        case ErrorKind.LOCAL_CHANGED:
            return "Local data changed during the sync, sync again"
        case ErrorKind.UNKNOWN:
            return "Unexpected sync error"
        case _:
            assert_never(kind)


def describe_error(exc: BaseException) -> str:
    """Describe an exception for display, wrapping unclassified errors."""
    kind = classify_error(exc)
    if kind is ErrorKind.UNKNOWN:
        detail = str(exc) or exc.__class__.__name__
        return f"{describe_error_kind(kind)}: {detail}"
    return f"{describe_error_kind(kind)} ({exc})"
