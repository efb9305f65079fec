"""Parsing of WebDAV ``207 Multi-Status`` bodies."""

from __future__ import annotations

import posixpath
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from urllib.parse import unquote, urlsplit

from replisync.sync.errors import NoEtagAPIError
from replisync.sync.protocol import RemoteFileMeta, ResourceType
from replisync.sync.providers.base import rev_from_meta_data

DAV_NS = "{DAV:}"

PROPFIND_BODY = """<?xml version="1.0" encoding="utf-8"?>
<d:propfind xmlns:d="DAV:" xmlns:oc="http://owncloud.org/ns">
  <d:prop>
    <d:displayname/>
    <d:getcontentlength/>
    <d:getlastmodified/>
    <d:getetag/>
    <d:resourcetype/>
    <d:getcontenttype/>
    <oc:etag/>
  </d:prop>
</d:propfind>"""

_STATUS_RE = re.compile(r"HTTP/\d(?:\.\d)?\s+(\d{3})")

# Property local names mapped onto header-style keys in RemoteFileMeta.raw
_RAW_KEYS = {
    "getcontenttype": "content-type",
    "getcontentlength": "content-length",
    "getlastmodified": "last-modified",
    "getetag": "etag",
    "displayname": "displayname",
}


@dataclass(frozen=True)
class DavResponse:
    """One ``<d:response>`` element of a multistatus body.

    ``href`` is kept percent-encoded as sent; :func:`href_path` decodes it.
    """

    href: str
    status: int | None
    props: dict[str, str] = field(default_factory=dict)
    is_collection: bool = False


def parse_status_line(line: str | None) -> int | None:
    """Extract the code from ``HTTP/1.1 423 Locked``."""
    if not line:
        return None
    match = _STATUS_RE.search(line)
    return int(match.group(1)) if match else None


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _namespace(tag: str) -> str:
    return tag[1:].split("}", 1)[0] if tag.startswith("{") else ""


def parse_multistatus(body: str) -> list[DavResponse]:
    """Parse a multistatus document. Raises ``ValueError`` on malformed XML."""
    try:
        root = ET.fromstring(body)
    except ET.ParseError as e:
        raise ValueError(f"Malformed multistatus body: {e}") from e

    responses: list[DavResponse] = []
    for resp in root.iter(f"{DAV_NS}response"):
        href = (resp.findtext(f"{DAV_NS}href") or "").strip()
        status = parse_status_line(resp.findtext(f"{DAV_NS}status"))
        props: dict[str, str] = {}
        is_collection = False

        for propstat in resp.findall(f"{DAV_NS}propstat"):
            propstat_status = parse_status_line(propstat.findtext(f"{DAV_NS}status"))
            # Unsupported properties come back in their own 404 propstat
            if propstat_status is not None and not 200 <= propstat_status < 300:
                continue
            prop = propstat.find(f"{DAV_NS}prop")
            if prop is None:
                continue
            for child in prop:
                name = _local_name(child.tag)
                if name == "resourcetype":
                    is_collection = child.find(f"{DAV_NS}collection") is not None
                    continue
                # ownCloud/Nextcloud publish their own etag next to DAV:getetag
                if name == "etag" and _namespace(child.tag) != "DAV:":
                    name = "oc-etag"
                props[name] = (child.text or "").strip()

        responses.append(
            DavResponse(href=href, status=status, props=props, is_collection=is_collection)
        )
    return responses


def failed_hrefs(responses: list[DavResponse]) -> list[str]:
    """Hrefs whose per-resource status reports a failure."""
    return [r.href for r in responses if r.status is not None and r.status >= 400]


def href_path(href_or_url: str) -> str:
    """Decoded path component without trailing slash."""
    return unquote(urlsplit(href_or_url).path).rstrip("/")


def to_remote_meta(response: DavResponse, filename: str | None = None) -> RemoteFileMeta:
    """Convert a parsed response into :class:`RemoteFileMeta`."""
    name = filename if filename is not None else href_path(response.href).lstrip("/")
    raw: dict[str, str] = {"href": response.href}
    for prop_name, value in response.props.items():
        raw[_RAW_KEYS.get(prop_name, prop_name)] = value

    try:
        size = int(response.props.get("getcontentlength") or 0)
    except ValueError:
        size = 0

    try:
        revision: str | None = rev_from_meta_data(raw)
    except NoEtagAPIError:
        revision = None
    return RemoteFileMeta(
        filename=name,
        basename=posixpath.basename(name.rstrip("/")),
        last_modified=response.props.get("getlastmodified", ""),
        size=size,
        resource_type=ResourceType.COLLECTION if response.is_collection else ResourceType.FILE,
        revision=revision,
        raw=raw,
    )
