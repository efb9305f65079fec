"""WebDAV implementation of the remote protocol client over aiohttp."""

from __future__ import annotations

import asyncio
import base64
import hashlib
import logging
import posixpath
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import aiohttp

from replisync.sync.errors import (
    AuthFailSPError,
    HttpNotOkAPIError,
    InvalidDataError,
    MissingCredentialsSPError,
    NetworkAPIError,
    NoEtagAPIError,
    PartialDeletionError,
    RemoteFileNotFoundAPIError,
    RevMismatchAPIError,
    SyncError,
)
from replisync.sync.fallback import FallbackStep, run_fallback_chain
from replisync.sync.protocol import (
    DownloadResult,
    RemoteFileMeta,
    RemoteFileRevision,
    ResourceType,
)
from replisync.sync.providers.base import (
    RemoteProtocolClient,
    looks_like_html,
    normalize_revision,
    rev_from_meta_data,
)
from replisync.sync.providers.multistatus import (
    PROPFIND_BODY,
    failed_hrefs,
    href_path,
    parse_multistatus,
    to_remote_meta,
)
from replisync.utils.timeutils import utcnow

if TYPE_CHECKING:
    from replisync.unified_config import WebdavConfig

logger = logging.getLogger(__name__)

# Statuses meaning the server does not implement PROPFIND listing
_UNSUPPORTED_METHOD_STATUSES = (405, 501)


@dataclass(frozen=True)
class HttpResponse:
    """Fully-read HTTP response with lower-cased header names."""

    status: int
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def revision(self) -> RemoteFileRevision | None:
        """Normalized revision from ``ETag``/``OC-ETag``, if present."""
        try:
            return rev_from_meta_data(self.headers)
        except NoEtagAPIError:
            return None


def _quote_revision(rev: str) -> str:
    return f'"{normalize_revision(rev)}"'


class WebdavApi(RemoteProtocolClient):
    """
    Revision-safe file operations against a WebDAV server.

    The configuration is fetched through ``get_config`` before every request
    so credential changes apply without rebuilding the client.

    Usage:
        async with WebdavApi(get_config) as api:
            rev = await api.upload("sync/__meta_", data)
            result = await api.download("sync/__meta_", local_revision=rev)
    """

    provider_id = "webdav"

    def __init__(
        self,
        get_config: Callable[[], Awaitable[WebdavConfig]],
        *,
        timeout: float = 30.0,
    ) -> None:
        self._get_config = get_config
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: aiohttp.ClientSession | None = None

    async def connect(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)

    async def close(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> WebdavApi:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        await self.close()

    async def is_ready(self) -> bool:
        try:
            (await self._get_config()).validate()
        except MissingCredentialsSPError:
            return False
        return True

    # ── Public operations ──────────────────────────────────────────────────

    async def upload(
        self,
        path: str,
        data: bytes,
        *,
        is_overwrite: bool = False,
        expected_revision: RemoteFileRevision | None = None,
    ) -> RemoteFileRevision:
        """Write ``data`` to ``path`` and return the resulting revision.

        Preconditions:
            - ``expected_revision`` given: ``If-Match`` (also when overwriting)
            - no revision, not overwriting: ``If-None-Match: *`` (create-only)
            - no revision, overwriting: unconditional

        A 404 or 409 creates the parent collection and retries once. When the
        server omits the revision header, PROPFIND and then HEAD are tried.

        Raises:
            RevMismatchAPIError: The precondition failed (HTTP 412).
            NoEtagAPIError: The write succeeded but no revision was found.
        """
        headers = {"Content-Type": "application/octet-stream"}
        if expected_revision:
            headers["If-Match"] = _quote_revision(expected_revision)
        elif not is_overwrite:
            headers["If-None-Match"] = "*"

        try:
            response = await self._request("PUT", path, headers=headers, body=data)
        except (RemoteFileNotFoundAPIError, HttpNotOkAPIError) as e:
            if isinstance(e, HttpNotOkAPIError) and e.status != 409:
                raise
            logger.debug("PUT %s failed (%s), creating parent collection and retrying", path, e)
            await self._create_parent_folder(path)
            response = await self._request("PUT", path, headers=headers, body=data)

        revision = response.revision()
        if revision:
            return revision
        return await self._recover_revision(path)

    async def download(
        self,
        path: str,
        *,
        local_revision: RemoteFileRevision | None = None,
        range_start: int | None = None,
        range_end: int | None = None,
    ) -> DownloadResult:
        """Read ``path``.

        With ``local_revision`` the server may answer 304, returned as
        ``not_modified=True`` with no data. Without a revision header the
        revision comes from PROPFIND or, failing that, from a SHA-256 of the
        body (first 16 hex characters).

        Raises:
            RemoteFileNotFoundAPIError: 404, or an HTML page served as 2xx.
        """
        headers: dict[str, str] = {}
        if local_revision:
            headers["If-None-Match"] = _quote_revision(local_revision)
        if range_start is not None or range_end is not None:
            end = "" if range_end is None else str(range_end)
            headers["Range"] = f"bytes={range_start or 0}-{end}"

        response = await self._request("GET", path, headers=headers, accept=(304,))
        if response.status == 304:
            return DownloadResult(
                revision=normalize_revision(local_revision), data=None, not_modified=True
            )

        if looks_like_html(response.body):
            raise RemoteFileNotFoundAPIError(path, f"HTML page returned instead of {path}")

        revision = response.revision()
        if not revision:
            body = response.body
            revision = await run_fallback_chain(
                [
                    FallbackStep("PROPFIND", lambda: self._revision_via_propfind(path)),
                    FallbackStep("content-hash", lambda: self._content_revision(body)),
                ],
                fatal=(RemoteFileNotFoundAPIError, AuthFailSPError),
                recoverable=(SyncError,),
            )
        return DownloadResult(revision=revision, data=response.body)

    async def remove(
        self, path: str, *, expected_revision: RemoteFileRevision | None = None
    ) -> None:
        """Delete a file, or a collection with all its descendants.

        Raises:
            PartialDeletionError: A 207 body reported failed children.
        """
        headers: dict[str, str] = {}
        if expected_revision:
            headers["If-Match"] = _quote_revision(expected_revision)
        if await self._is_collection(path):
            headers["Depth"] = "infinity"

        response = await self._request("DELETE", path, headers=headers)
        if response.status != 207:
            return

        try:
            failed = failed_hrefs(parse_multistatus(response.text))
        except ValueError:
            logger.warning("Unparseable multistatus body deleting %s", path, exc_info=True)
            raise PartialDeletionError(path) from None
        if failed:
            logger.warning("Delete of %s left %d resources behind: %s", path, len(failed), failed)
            raise PartialDeletionError(path, failed)

    async def get_file_meta(
        self,
        path: str,
        *,
        expected_revision: RemoteFileRevision | None = None,
        use_get_fallback: bool = False,
    ) -> RemoteFileMeta:
        """Metadata via PROPFIND, then HEAD, then (optionally) a full GET.

        Raises:
            RemoteFileNotFoundAPIError: At whichever stage the file is missing.
            RevMismatchAPIError: ``expected_revision`` differs from the remote.
        """
        steps: list[FallbackStep[RemoteFileMeta]] = [
            FallbackStep("PROPFIND", lambda: self._propfind_meta(path)),
            FallbackStep("HEAD", lambda: self._head_meta(path)),
        ]
        if use_get_fallback:
            steps.append(FallbackStep("GET", lambda: self._get_meta(path)))

        meta = await run_fallback_chain(
            steps,
            fatal=(RemoteFileNotFoundAPIError, AuthFailSPError),
            recoverable=(SyncError,),
        )

        if expected_revision and meta.revision:
            expected = normalize_revision(expected_revision)
            if meta.revision != expected:
                raise RevMismatchAPIError(path, expected, meta.revision)
        return meta

    async def create_folder(self, path: str) -> None:
        """MKCOL ``path``, creating missing ancestors; existing is fine."""
        await self._mkcol(path, create_parents=True)

    async def file_exists(self, path: str) -> bool:
        """PROPFIND, falling back to HEAD on servers that reject PROPFIND."""
        try:
            await self.get_file_meta(path)
        except RemoteFileNotFoundAPIError:
            return False
        return True

    async def list_folder(self, path: str) -> list[RemoteFileMeta]:
        """Direct children of ``path``; empty when PROPFIND is unsupported."""
        return [meta async for meta in self.iter_folder(path)]

    async def iter_folder(self, path: str) -> AsyncIterator[RemoteFileMeta]:
        try:
            response = await self._propfind(path, depth="1")
        except HttpNotOkAPIError as e:
            if e.status in _UNSUPPORTED_METHOD_STATUSES:
                logger.info("Server does not support PROPFIND listing for %s", path)
                return
            raise
        except NetworkAPIError:
            logger.warning("Listing %s failed, treating as empty", path, exc_info=True)
            return

        if response.status != 207:
            logger.info("PROPFIND on %s answered %d, treating as empty", path, response.status)
            return

        try:
            responses = parse_multistatus(response.text)
        except ValueError as e:
            raise InvalidDataError(f"Invalid listing for {path}: {e}") from e

        cfg = (await self._get_config()).validate()
        folder_path = href_path(self._get_url(path, cfg))
        folder = path.strip("/")
        for entry in responses:
            entry_path = href_path(entry.href)
            if entry_path == folder_path or entry_path == "/" + folder:
                continue
            basename = posixpath.basename(entry_path)
            filename = f"{folder}/{basename}" if folder else basename
            yield to_remote_meta(entry, filename=filename)

    # ── Revision helpers ───────────────────────────────────────────────────

    async def _recover_revision(self, path: str) -> RemoteFileRevision:
        return await run_fallback_chain(
            [
                FallbackStep("PROPFIND", lambda: self._revision_via_propfind(path)),
                FallbackStep("HEAD", lambda: self._revision_via_head(path)),
            ],
            fatal=(AuthFailSPError,),
            recoverable=(SyncError,),
            on_exhausted=lambda _err: NoEtagAPIError(path),
        )

    async def _revision_via_propfind(self, path: str) -> RemoteFileRevision | None:
        meta = await self._propfind_meta(path)
        return meta.revision

    async def _revision_via_head(self, path: str) -> RemoteFileRevision | None:
        response = await self._request("HEAD", path)
        return response.revision()

    async def _content_revision(self, body: bytes) -> RemoteFileRevision:
        # Stable across downloads of identical bytes when the server has no ETag
        return hashlib.sha256(body).hexdigest()[:16]

    # ── Metadata helpers ───────────────────────────────────────────────────

    async def _propfind(self, path: str, *, depth: str) -> HttpResponse:
        return await self._request(
            "PROPFIND",
            path,
            headers={"Depth": depth, "Content-Type": "application/xml; charset=utf-8"},
            body=PROPFIND_BODY.encode("utf-8"),
        )

    async def _propfind_meta(self, path: str) -> RemoteFileMeta:
        response = await self._propfind(path, depth="0")
        if response.status != 207:
            if looks_like_html(response.body):
                raise RemoteFileNotFoundAPIError(path, f"HTML page returned instead of {path}")
            raise HttpNotOkAPIError(response.status, path, "PROPFIND did not return multistatus")

        try:
            responses = parse_multistatus(response.text)
        except ValueError as e:
            raise InvalidDataError(f"Invalid PROPFIND response for {path}: {e}") from e
        if not responses:
            raise InvalidDataError(f"Empty PROPFIND response for {path}")

        first = responses[0]
        if first.status == 404:
            raise RemoteFileNotFoundAPIError(path)
        return to_remote_meta(first, filename=path.lstrip("/"))

    async def _head_meta(self, path: str) -> RemoteFileMeta:
        response = await self._request("HEAD", path)
        if response.headers.get("content-type", "").startswith("text/html"):
            raise RemoteFileNotFoundAPIError(path, f"HTML page returned instead of {path}")
        try:
            size = int(response.headers.get("content-length") or 0)
        except ValueError:
            size = 0
        name = path.lstrip("/")
        return RemoteFileMeta(
            filename=name,
            basename=posixpath.basename(name.rstrip("/")),
            last_modified=response.headers.get("last-modified", ""),
            size=size,
            resource_type=ResourceType.FILE,
            revision=response.revision(),
            raw=dict(response.headers),
        )

    async def _get_meta(self, path: str) -> RemoteFileMeta:
        result = await self.download(path)
        name = path.lstrip("/")
        return RemoteFileMeta(
            filename=name,
            basename=posixpath.basename(name),
            last_modified=utcnow().isoformat(),
            size=len(result.data) if result.data is not None else 0,
            resource_type=ResourceType.FILE,
            revision=result.revision,
            raw={"etag": result.revision, "href": name},
        )

    async def _is_collection(self, path: str) -> bool:
        try:
            meta = await self._propfind_meta(path)
        except (RemoteFileNotFoundAPIError, AuthFailSPError):
            raise
        except SyncError as e:
            logger.debug("Could not resolve resource type of %s, assuming file: %s", path, e)
            return False
        return meta.is_collection

    # ── Collections ────────────────────────────────────────────────────────

    async def _create_parent_folder(self, path: str) -> None:
        parent = posixpath.dirname(path.strip("/"))
        if parent:
            await self.create_folder(parent)

    async def _mkcol(self, path: str, *, create_parents: bool) -> None:
        try:
            await self._request("MKCOL", path)
        except HttpNotOkAPIError as e:
            if e.status == 405:
                logger.debug("Collection %s already exists", path)
                return
            parent = posixpath.dirname(path.strip("/"))
            if e.status == 409 and create_parents and parent:
                await self._mkcol(parent, create_parents=True)
                await self._mkcol(path, create_parents=False)
                return
            raise

    # ── Transport ──────────────────────────────────────────────────────────

    @staticmethod
    def _get_url(path: str, cfg: WebdavConfig) -> str:
        return f"{cfg.base_url.rstrip('/')}/{path.lstrip('/')}"

    @staticmethod
    def _get_auth_header(cfg: WebdavConfig) -> str:
        token = base64.b64encode(f"{cfg.username}:{cfg.password}".encode()).decode("ascii")
        return f"Basic {token}"

    @staticmethod
    def _check_common_errors(status: int, path: str) -> None:
        """Translate status codes shared by every operation.

        401/403 become an authentication failure; 207 is never an error here
        and is left for the calling operation to inspect.
        """
        if status in (401, 403):
            raise AuthFailSPError(f"Authentication failed ({status}) for {path}")

    @staticmethod
    def _raise_for_status(response: HttpResponse, path: str, accept: tuple[int, ...]) -> None:
        status = response.status
        if status < 300 or status in accept:
            return
        if status == 404:
            raise RemoteFileNotFoundAPIError(path)
        if status == 412:
            raise RevMismatchAPIError(path)
        raise HttpNotOkAPIError(status, path, response.text[:200])

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            await self.connect()
        assert self._session is not None
        return self._session

    async def _request(
        self,
        method: str,
        path: str,
        *,
        headers: dict[str, str] | None = None,
        body: bytes | None = None,
        accept: tuple[int, ...] = (),
    ) -> HttpResponse:
        cfg = (await self._get_config()).validate()
        url = self._get_url(path, cfg)
        request_headers = {"Authorization": self._get_auth_header(cfg), **(headers or {})}
        session = await self._ensure_session()

        try:
            async with session.request(
                method, url, headers=request_headers, data=body
            ) as response:
                payload = await response.read()
                result = HttpResponse(
                    status=response.status,
                    headers={k.lower(): v for k, v in response.headers.items()},
                    body=payload or b"",
                )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise NetworkAPIError(method, path, e) from e

        logger.debug("%s %s -> %d", method, url, result.status)
        self._check_common_errors(result.status, path)
        self._raise_for_status(result, path, accept)
        return result
