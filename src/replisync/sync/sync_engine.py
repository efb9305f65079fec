"""Sync engine: orchestrates one sync attempt end to end.

Flow of :meth:`SyncEngine.sync`:
1. Reject immediately when another attempt holds the guard.
2. Fetch the remote meta file and the local snapshot.
3. Let the conflict resolver classify the pair.
4. Push, pull, do nothing, or hand a conflict to the caller.

Decisions the engine cannot make itself (conflict choice, authorization
code) are delivered through one-shot request objects. The guard is released
before the engine waits on one. A newer request of the same kind supersedes
the pending one, which then resolves to ``None``.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import posixpath
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Generic, TypeVar, assert_never

from replisync.sync.codec import PayloadCodec, decode_meta, encode_meta, new_salt
from replisync.sync.conflict_resolver import determine_sync_status, ensure_supported_version
from replisync.sync.device import LockOwner, hostname
from replisync.sync.errors import (
    DecryptNoPasswordError,
    ErrorKind,
    LockPresentError,
    NoEtagAPIError,
    NoRemoteModelFileError,
    RemoteFileNotFoundAPIError,
    RevMismatchAPIError,
    RevMismatchForModelError,
    SyncError,
    classify_error,
    describe_error,
)
from replisync.sync.protocol import (
    CROSS_MODEL_VERSION,
    ConflictData,
    ConflictDecision,
    RemoteFileRevision,
    SyncMetadata,
    SyncOutcome,
    SyncResult,
    SyncStatus,
)
from replisync.sync.providers.base import RemoteProtocolClient, normalize_revision
from replisync.sync.revision_store import RevisionStore
from replisync.sync.vector_clock import LamportClock
from replisync.utils.timeutils import utcnow

logger = logging.getLogger(__name__)

META_FILE = "__meta_"
LOCK_FILE = "__lock_"

T = TypeVar("T")


class EngineState(StrEnum):
    """Where the engine stands between and during attempts.

    ``FAILED`` is kept after a failed attempt until the next one starts;
    :attr:`SyncEngine.last_error_kind` holds the classified failure.
    """

    IDLE = "idle"
    RUNNING = "running"
    CONFLICT_PENDING = "conflict_pending"
    AUTH_PENDING = "auth_pending"
    FAILED = "failed"


@dataclass
class PendingRequest(Generic[T]):
    """One-shot channel carrying a caller's answer back to the engine."""

    _future: asyncio.Future[T | None] = field(
        default_factory=lambda: asyncio.get_running_loop().create_future(),
        init=False,
        repr=False,
    )

    @property
    def done(self) -> bool:
        return self._future.done()

    def resolve(self, value: T) -> bool:
        """Deliver the answer. Returns False if the request is already closed."""
        if self._future.done():
            return False
        self._future.set_result(value)
        return True

    def supersede(self) -> None:
        """Close the channel without an answer."""
        if not self._future.done():
            self._future.set_result(None)

    async def wait(self) -> T | None:
        return await self._future


@dataclass
class ConflictRequest(PendingRequest[ConflictDecision]):
    conflict: ConflictData | None = None


@dataclass
class AuthCodeRequest(PendingRequest[str]):
    auth_url: str = ""


ConflictCallback = Callable[[ConflictRequest], Awaitable[None] | None]
AuthCodeCallback = Callable[[AuthCodeRequest], Awaitable[None] | None]
AuthVerifiedCallback = Callable[[Mapping[str, Any]], Awaitable[None] | None]
ReloadCallback = Callable[[], Awaitable[None] | None]


async def _maybe_await(result: Any) -> None:
    if inspect.isawaitable(result):
        await result


@dataclass(frozen=True)
class _RemoteState:
    meta: SyncMetadata
    revision: RemoteFileRevision


class SyncEngine:
    """Single-flight sync orchestration for one local store and one remote.

    Usage:
        engine = SyncEngine(client, store, device_id=device_id, on_reload=reload)
        result = await engine.sync()
        if not result.ok:
            print(result.message)

    ``encrypt`` defaults to "encrypt when a passphrase is given". Passing
    ``encrypt=True`` without a passphrase makes every push fail with
    :class:`DecryptNoPasswordError` instead of uploading plaintext.
    """

    def __init__(
        self,
        client: RemoteProtocolClient,
        store: RevisionStore,
        *,
        device_id: str,
        device_name: str | None = None,
        sync_folder: str = "",
        encryption_key: str | None = None,
        encrypt: bool | None = None,
        on_conflict: ConflictCallback | None = None,
        on_auth_code: AuthCodeCallback | None = None,
        on_auth_verified: AuthVerifiedCallback | None = None,
        on_reload: ReloadCallback | None = None,
    ) -> None:
        self._client = client
        self._store = store
        self._device_id = device_id
        self._device_name = device_name if device_name is not None else hostname()
        self._folder = sync_folder.strip("/")
        self._codec = PayloadCodec(encryption_key)
        self._encrypt = encrypt if encrypt is not None else encryption_key is not None
        self._on_conflict = on_conflict
        self._on_auth_code = on_auth_code
        self._on_auth_verified = on_auth_verified
        self._on_reload = on_reload

        self._guard = asyncio.Lock()
        self._state = EngineState.IDLE
        self._last_error_kind: ErrorKind | None = None
        self._pending_conflict: ConflictRequest | None = None
        self._pending_auth: AuthCodeRequest | None = None

    # ── State ──────────────────────────────────────────────────────────────

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def last_error_kind(self) -> ErrorKind | None:
        """Kind of the most recent failure, cleared when an attempt starts."""
        return self._last_error_kind

    @property
    def is_sync_in_progress(self) -> bool:
        return self._guard.locked()

    @property
    def pending_conflict(self) -> ConflictRequest | None:
        return self._pending_conflict

    @property
    def pending_auth(self) -> AuthCodeRequest | None:
        return self._pending_auth

    def resolve_conflict(self, decision: ConflictDecision) -> bool:
        """Answer the pending conflict request, if any."""
        request = self._pending_conflict
        return request.resolve(decision) if request is not None else False

    def submit_auth_code(self, code: str) -> bool:
        """Answer the pending authorization request, if any."""
        request = self._pending_auth
        return request.resolve(code) if request is not None else False

    def _begin(self) -> None:
        self._state = EngineState.RUNNING
        self._last_error_kind = None

    def _settle_state(self) -> None:
        if self._guard.locked():
            self._state = EngineState.RUNNING
        elif self._pending_conflict is not None and not self._pending_conflict.done:
            self._state = EngineState.CONFLICT_PENDING
        elif self._pending_auth is not None and not self._pending_auth.done:
            self._state = EngineState.AUTH_PENDING
        elif self._last_error_kind is not None:
            self._state = EngineState.FAILED
        else:
            self._state = EngineState.IDLE

    # ── Paths ──────────────────────────────────────────────────────────────

    def _path(self, name: str) -> str:
        return posixpath.join(self._folder, name) if self._folder else name

    # ── Sync ───────────────────────────────────────────────────────────────

    async def sync(self) -> SyncResult:
        """Run one sync attempt.

        Returns an ``ALREADY_IN_PROGRESS`` result without any network call
        when another attempt is running. Never raises for sync failures;
        they are classified into a ``FAILED`` result.

        An unconfigured provider yields ``NOT_CONFIGURED``. When the provider
        offers an authorization handshake and a code handler is registered,
        the engine waits for the code outside the guard and, once the code is
        verified, runs the sync once more.
        """
        return await self._sync(allow_auth=True)

    async def _sync(self, *, allow_auth: bool) -> SyncResult:
        if self._guard.locked():
            logger.debug("Sync already in progress, skipping")
            return self._already_in_progress()

        outcome: SyncResult | ConflictData
        async with self._guard:
            self._begin()
            try:
                outcome = await self._run_attempt()
            except Exception as e:
                outcome = self._failure(e)

        self._settle_state()
        if isinstance(outcome, ConflictData):
            return await self._handle_conflict(outcome)
        if allow_auth and outcome.ok and outcome.status is SyncStatus.NOT_CONFIGURED:
            if await self.configure_auth_if_necessary():
                logger.info("Provider %s authorized, syncing again", self._client.provider_id)
                return await self._sync(allow_auth=False)
        return outcome

    async def _run_attempt(self) -> SyncResult | ConflictData:
        if not await self._client.is_ready():
            logger.info("Provider %s is not configured", self._client.provider_id)
            return SyncResult(SyncOutcome.COMPLETED, status=SyncStatus.NOT_CONFIGURED)

        remote = await self._fetch_remote_meta()
        local = await self._store.snapshot()

        if remote is None:
            logger.info("No remote data found, uploading all local data")
            await self._push(local, None, await self._store.list_model_ids(), force=False)
            return SyncResult(SyncOutcome.COMPLETED, status=SyncStatus.UPDATE_REMOTE_ALL)

        ensure_supported_version(remote.meta)
        if remote.meta.encrypted and not self._codec.can_encrypt:
            raise DecryptNoPasswordError("Remote data is encrypted but no passphrase is configured")

        missing = await self._find_missing_models(remote.meta)
        decision = determine_sync_status(local, remote.meta, missing_remote_files=missing)
        status = decision.status

        match status:
            case SyncStatus.IN_SYNC:
                logger.debug("Already in sync")
            case SyncStatus.UPDATE_REMOTE:
                dirty = await self._store.dirty_model_ids()
                await self._push(local, remote, sorted(dirty), force=False)
            case SyncStatus.UPDATE_REMOTE_ALL:
                await self._push(local, remote, await self._store.list_model_ids(), force=False)
            case SyncStatus.UPDATE_LOCAL:
                await self._pull(local, remote.meta, replace_all=False)
            case SyncStatus.UPDATE_LOCAL_ALL:
                await self._pull(local, remote.meta, replace_all=True)
            case SyncStatus.NOT_CONFIGURED:
                logger.info("Remote reported as not configured")
            case SyncStatus.INCOMPLETE_REMOTE_DATA:
                logger.warning("Remote data is incomplete, leaving both sides untouched")
            case SyncStatus.CONFLICT:
                assert decision.conflict is not None
                return decision.conflict
            case _:
                assert_never(status)

        logger.info("Sync finished: %s", status)
        return SyncResult(SyncOutcome.COMPLETED, status=status)

    async def _handle_conflict(self, conflict: ConflictData) -> SyncResult:
        if self._on_conflict is None:
            logger.warning("Sync conflict (%s) and no conflict handler registered", conflict.reason)
            return SyncResult(
                SyncOutcome.COMPLETED,
                status=SyncStatus.CONFLICT,
                conflict_data=conflict,
                message=f"Conflict: {conflict.reason}",
            )

        if self._pending_conflict is not None:
            logger.info("Superseding pending conflict request")
            self._pending_conflict.supersede()
        request = ConflictRequest(conflict=conflict)
        self._pending_conflict = request
        self._settle_state()

        try:
            await _maybe_await(self._on_conflict(request))
            decision = await request.wait()
        finally:
            if self._pending_conflict is request:
                self._pending_conflict = None
            self._settle_state()

        if decision is None:
            return SyncResult(
                SyncOutcome.SUPERSEDED,
                status=SyncStatus.CONFLICT,
                conflict_data=conflict,
                message="Conflict request superseded",
            )
        return await self._apply_decision(conflict, decision)

    async def _apply_decision(
        self, conflict: ConflictData, decision: ConflictDecision
    ) -> SyncResult:
        if decision is ConflictDecision.CANCEL:
            logger.info("Conflict left unresolved")
            return SyncResult(
                SyncOutcome.COMPLETED,
                status=SyncStatus.CONFLICT,
                conflict_data=conflict,
                decision=decision,
            )

        if self._guard.locked():
            logger.debug("Another sync started while the conflict was pending")
            return self._already_in_progress()

        error: Exception | None = None
        async with self._guard:
            self._begin()
            try:
                if decision is ConflictDecision.USE_LOCAL:
                    await self.upload_all(force=True)
                    status = SyncStatus.UPDATE_REMOTE_ALL
                else:
                    await self.download_all()
                    status = SyncStatus.UPDATE_LOCAL_ALL
            except Exception as e:
                error = e

        if error is not None:
            failed = self._failure(error)
            self._settle_state()
            return SyncResult(
                failed.outcome,
                conflict_data=conflict,
                decision=decision,
                error_kind=failed.error_kind,
                error=failed.error,
                message=failed.message,
            )
        self._settle_state()
        logger.info("Conflict resolved with %s", decision)
        return SyncResult(
            SyncOutcome.COMPLETED, status=status, conflict_data=conflict, decision=decision
        )

    # ── Public helpers ─────────────────────────────────────────────────────

    async def upload_all(self, force: bool = False) -> None:
        """Upload every local model and a new meta file.

        With ``force`` the remote lock and revision preconditions are
        ignored and the result is ordered after both replicas.
        """
        remote = await self._fetch_remote_meta()
        local = await self._store.snapshot()
        await self._push(local, remote, await self._store.list_model_ids(), force=force)

    async def download_all(self) -> None:
        """Replace local data with the complete remote state.

        Raises:
            RemoteFileNotFoundAPIError: The remote has no meta file.
        """
        remote = await self._fetch_remote_meta()
        if remote is None:
            raise RemoteFileNotFoundAPIError(self._path(META_FILE))
        ensure_supported_version(remote.meta)
        await self._pull(await self._store.snapshot(), remote.meta, replace_all=True)

    async def force_upload(self) -> SyncResult:
        """Overwrite the remote with local data under the single-flight guard."""
        return await self._run_exclusive(self._forced_upload, SyncStatus.UPDATE_REMOTE_ALL)

    async def force_download(self) -> SyncResult:
        """Overwrite local data with the remote under the single-flight guard."""
        return await self._run_exclusive(self.download_all, SyncStatus.UPDATE_LOCAL_ALL)

    async def configure_auth_if_necessary(self) -> bool:
        """Run the provider's authorization handshake when it offers one.

        The verified provider configuration is handed to ``on_auth_verified``
        for persisting. Returns True when a code was obtained and verified.
        """
        helper = await self._client.get_auth_helper()
        if helper is None:
            logger.info("Provider %s needs configuration before syncing", self._client.provider_id)
            return False
        if self._on_auth_code is None:
            logger.warning(
                "Authorization required at %s but no handler is registered", helper.auth_url
            )
            return False

        if self._pending_auth is not None:
            logger.info("Superseding pending authorization request")
            self._pending_auth.supersede()
        request = AuthCodeRequest(auth_url=helper.auth_url)
        self._pending_auth = request
        self._settle_state()
        try:
            await _maybe_await(self._on_auth_code(request))
            code = await request.wait()
        finally:
            if self._pending_auth is request:
                self._pending_auth = None
            self._settle_state()

        if not code:
            logger.info("Authorization request closed without a code")
            return False
        verified = await helper.verify_code(code)
        if verified is not None and self._on_auth_verified is not None:
            await _maybe_await(self._on_auth_verified(verified))
        return True

    async def _forced_upload(self) -> None:
        await self.upload_all(force=True)

    async def _run_exclusive(
        self, operation: Callable[[], Awaitable[None]], status: SyncStatus
    ) -> SyncResult:
        if self._guard.locked():
            logger.debug("Sync already in progress, skipping %s", status)
            return self._already_in_progress()

        result = SyncResult(SyncOutcome.COMPLETED, status=status)
        async with self._guard:
            self._begin()
            try:
                await operation()
            except Exception as e:
                result = self._failure(e)

        self._settle_state()
        return result

    # ── Remote meta ────────────────────────────────────────────────────────

    async def _fetch_remote_meta(self) -> _RemoteState | None:
        path = self._path(META_FILE)
        try:
            result = await self._client.download(path)
        except RemoteFileNotFoundAPIError:
            logger.debug("Remote meta %s not found", path)
            return None
        return _RemoteState(meta=decode_meta(result.data), revision=result.revision)

    async def _find_missing_models(self, remote: SyncMetadata) -> list[str]:
        if not remote.revision_map:
            return []
        listing = await self._client.list_folder(self._folder)
        if not listing:
            logger.debug("Empty or unsupported listing, skipping completeness check")
            return []
        present = {meta.basename for meta in listing if not meta.is_collection}
        return sorted(model_id for model_id in remote.revision_map if model_id not in present)

    # ── Push ───────────────────────────────────────────────────────────────

    async def _push(
        self,
        local: SyncMetadata,
        remote: _RemoteState | None,
        model_ids: Iterable[str],
        *,
        force: bool,
    ) -> None:
        """Upload models and the meta file under the remote lock.

        Models the remote meta does not reference are written unconditionally:
        they can only be leftovers of an interrupted push, and the meta upload
        stays conditional on the fetched meta revision.
        """
        remote_meta = remote.meta if remote is not None else None
        salt = self._choose_salt(remote_meta)
        targets = list(model_ids)
        if remote_meta is not None and (
            remote_meta.encrypted != (salt is not None) or remote_meta.encryption_salt != salt
        ):
            # Payload encoding changed: every model must be rewritten
            targets = await self._store.list_model_ids()

        revision_map = dict(remote_meta.revision_map) if remote_meta is not None else {}
        uploaded: dict[str, bytes] = {}

        async with self._remote_lock(force=force):
            for model_id in targets:
                data = await self._store.get_model(model_id)
                if data is None:
                    revision_map.pop(model_id, None)
                    continue
                expected = None if force else revision_map.get(model_id)
                revision_map[model_id] = await self._client.upload(
                    self._path(model_id),
                    self._codec.encode(data, salt=salt),
                    is_overwrite=True,
                    expected_revision=expected,
                )
                uploaded[model_id] = data

            if force and remote_meta is not None:
                vector_clock = local.vector_clock.merge(remote_meta.vector_clock).increment(
                    self._device_id
                )
                lamport = LamportClock(max(local.lamport, remote_meta.lamport)).tick().value
            else:
                vector_clock = local.vector_clock
                lamport = local.lamport

            now = utcnow()
            published = SyncMetadata(
                vector_clock=vector_clock,
                lamport=lamport,
                last_update=local.last_update or now,
                revision_map=revision_map,
                cross_model_version=CROSS_MODEL_VERSION,
                encrypted=salt is not None,
                encryption_salt=salt,
                device_id=self._device_id,
            )
            await self._client.upload(
                self._path(META_FILE),
                encode_meta(published),
                is_overwrite=force or remote is not None,
                expected_revision=None if force or remote is None else remote.revision,
            )

        await self._store.mark_synced(
            SyncMetadata(
                vector_clock=vector_clock,
                lamport=lamport,
                last_update=now,
                last_synced_update=now,
                last_synced_vector_clock=vector_clock,
                revision_map=revision_map,
                cross_model_version=CROSS_MODEL_VERSION,
                device_id=self._device_id,
            ),
            uploaded,
            snapshot=local,
        )
        logger.info("Uploaded %d models (force=%s)", len(uploaded), force)

    def _choose_salt(self, remote: SyncMetadata | None) -> str | None:
        if not self._encrypt:
            return None
        if not self._codec.can_encrypt:
            raise DecryptNoPasswordError("Encryption is enabled but no passphrase is configured")
        if remote is not None and remote.encrypted and remote.encryption_salt:
            return remote.encryption_salt
        return new_salt()

    # ── Pull ───────────────────────────────────────────────────────────────

    async def _pull(self, local: SyncMetadata, remote: SyncMetadata, *, replace_all: bool) -> None:
        """Download models, then install them and the remote clocks locally.

        Every download completes before anything local is written. A local
        edit recorded meanwhile aborts the install with
        :class:`LocalChangedDuringSyncError`.
        """
        targets = [
            model_id
            for model_id, revision in remote.revision_map.items()
            if replace_all or local.revision_map.get(model_id) != normalize_revision(revision)
        ]

        models: dict[str, bytes] = {}
        for model_id in targets:
            models[model_id] = await self._download_model(model_id, remote)

        now = utcnow()
        await self._store.apply_remote(
            models,
            SyncMetadata(
                vector_clock=remote.vector_clock,
                lamport=remote.lamport,
                last_update=now,
                last_synced_update=now,
                last_synced_vector_clock=remote.vector_clock,
                revision_map={k: normalize_revision(v) for k, v in remote.revision_map.items()},
                cross_model_version=remote.cross_model_version,
                device_id=self._device_id,
            ),
            replace_all=replace_all,
            snapshot=local,
        )
        logger.info("Downloaded %d models (replace_all=%s)", len(models), replace_all)

        if self._on_reload is not None:
            await _maybe_await(self._on_reload())

    async def _download_model(self, model_id: str, remote: SyncMetadata) -> bytes:
        path = self._path(model_id)
        expected = normalize_revision(remote.revision_map[model_id])
        try:
            result = await self._client.download(path)
        except RemoteFileNotFoundAPIError as e:
            raise NoRemoteModelFileError(model_id, path) from e

        if normalize_revision(result.revision) != expected:
            raise RevMismatchForModelError(model_id, path, expected, result.revision)
        return self._codec.decode(
            result.data or b"", encrypted=remote.encrypted, salt=remote.encryption_salt
        )

    # ── Remote lock ────────────────────────────────────────────────────────

    @asynccontextmanager
    async def _remote_lock(self, *, force: bool) -> AsyncIterator[None]:
        await self._acquire_remote_lock(force=force)
        try:
            yield
        except BaseException:
            try:
                await self._release_remote_lock()
            except SyncError:
                logger.warning("Could not remove remote lock after failed write", exc_info=True)
            raise
        await self._release_remote_lock()

    async def _acquire_remote_lock(self, *, force: bool) -> None:
        """Create ``__lock_`` create-only; forced pushes overwrite it.

        An existing lock fails the create-only PUT with 412, so no separate
        existence check is needed.
        """
        path = self._path(LOCK_FILE)
        owner = LockOwner(self._device_id, utcnow(), self._device_name)
        try:
            await self._client.upload(path, owner.encode(), is_overwrite=force)
        except RevMismatchAPIError as e:
            holder = await self._read_lock_owner(path)
            raise LockPresentError(f"Remote lock {path} is held by {holder}") from e
        except NoEtagAPIError:
            # The lock revision is never used
            logger.debug("Lock %s written without a revision", path)

    async def _read_lock_owner(self, path: str) -> LockOwner | str:
        try:
            result = await self._client.download(path)
        except SyncError:
            logger.debug("Could not read lock owner from %s", path, exc_info=True)
            return "another device"
        return LockOwner.decode(result.data or b"")

    async def _release_remote_lock(self) -> None:
        path = self._path(LOCK_FILE)
        try:
            await self._client.remove(path)
        except RemoteFileNotFoundAPIError:
            logger.debug("Remote lock %s already gone", path)

    # ── Results ────────────────────────────────────────────────────────────

    @staticmethod
    def _already_in_progress() -> SyncResult:
        return SyncResult(
            SyncOutcome.ALREADY_IN_PROGRESS,
            error_kind=ErrorKind.ALREADY_IN_PROGRESS,
            message="Sync already in progress",
        )

    def _failure(self, exc: Exception) -> SyncResult:
        kind = classify_error(exc)
        message = describe_error(exc)
        if kind is ErrorKind.UNKNOWN:
            logger.error("Sync failed: %s", message, exc_info=exc)
        else:
            logger.warning("Sync failed: %s", message)
        self._last_error_kind = kind
        return SyncResult(SyncOutcome.FAILED, error_kind=kind, error=exc, message=message)
