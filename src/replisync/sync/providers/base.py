"""Protocol-client contract every remote storage backend implements."""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any

from replisync.sync.errors import NoEtagAPIError
from replisync.sync.protocol import DownloadResult, RemoteFileMeta, RemoteFileRevision

_ETAG_KEYS = ("etag", "ETag", "oc-etag", "getetag")
_HTML_SNIFF_RE = re.compile(rb"^\s*(<!doctype\s+html|<html[\s>])", re.IGNORECASE)


def normalize_revision(rev: str | None) -> str:
    """Normalize a server revision token into a comparison key.

    Strips literal and ``&quot;``-encoded quotes, a weak ``W/`` prefix,
    path separators and surrounding whitespace. Applied until stable, so
    ``normalize_revision(normalize_revision(r)) == normalize_revision(r)``.
    """
    if not rev:
        return ""
    cleaned = rev
    while True:
        step = cleaned.strip()
        if step.startswith("W/"):
            step = step[2:]
        step = step.replace("&quot;", "").replace('"', "").replace("/", "").strip()
        if step == cleaned:
            return step
        cleaned = step


def rev_from_meta_data(meta: Mapping[str, Any]) -> RemoteFileRevision:
    """Pull a revision out of provider metadata in any of its usual spellings.

    Raises:
        NoEtagAPIError: If no revision key is present.
    """
    candidates: list[Mapping[str, Any]] = []
    nested = meta.get("data")
    if isinstance(nested, Mapping):
        candidates.append(nested)
    candidates.append(meta)

    for source in candidates:
        for key in _ETAG_KEYS:
            value = source.get(key)
            if value:
                cleaned = normalize_revision(str(value))
                if cleaned:
                    return cleaned
    raise NoEtagAPIError(message=f"No revision in metadata: {sorted(meta)}")


def looks_like_html(body: bytes | None) -> bool:
    """Best-effort sniff for an HTML error page served with a 2xx status.

    Some hosted WebDAV frontends answer missing files with a login or error
    page instead of a 404. Only the leading bytes are inspected.
    """
    if not body:
        return False
    return _HTML_SNIFF_RE.match(body[:512]) is not None


@dataclass(frozen=True)
class AuthHelper:
    """Interactive authorization handshake offered by OAuth-style backends.

    ``verify_code`` exchanges the code for credentials and returns the
    provider configuration to persist, or None when nothing needs saving.
    """

    auth_url: str
    verify_code: Callable[[str], Awaitable[Mapping[str, Any] | None]]


class RemoteProtocolClient(ABC):
    """Revision-aware file operations against a remote store.

    Paths are relative to the backend's configured root. Revisions returned
    by every method are already normalized.
    """

    provider_id: str = "abstract"

    @abstractmethod
    async def is_ready(self) -> bool:
        """True when the backend has all the configuration it needs."""

    async def get_auth_helper(self) -> AuthHelper | None:
        """Return the authorization handshake, if the backend needs one."""
        return None

    @abstractmethod
    async def upload(
        self,
        path: str,
        data: bytes,
        *,
        is_overwrite: bool = False,
        expected_revision: RemoteFileRevision | None = None,
    ) -> RemoteFileRevision:
        """Write ``data`` and return the new revision."""

    @abstractmethod
    async def download(
        self,
        path: str,
        *,
        local_revision: RemoteFileRevision | None = None,
        range_start: int | None = None,
        range_end: int | None = None,
    ) -> DownloadResult:
        """Read a file, optionally conditional on ``local_revision``."""

    @abstractmethod
    async def remove(
        self, path: str, *, expected_revision: RemoteFileRevision | None = None
    ) -> None:
        """Delete a file or, recursively, a collection."""

    @abstractmethod
    async def get_file_meta(
        self,
        path: str,
        *,
        expected_revision: RemoteFileRevision | None = None,
        use_get_fallback: bool = False,
    ) -> RemoteFileMeta:
        """Fetch metadata for a single resource."""

    @abstractmethod
    async def create_folder(self, path: str) -> None:
        """Create a collection; succeeds if it already exists."""

    @abstractmethod
    async def file_exists(self, path: str) -> bool:
        """True if the resource exists."""

    @abstractmethod
    async def list_folder(self, path: str) -> list[RemoteFileMeta]:
        """List the direct children of a collection."""

    async def close(self) -> None:
        """Release network resources."""
        return None
