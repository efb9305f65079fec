"""Device identity: this replica's vector clock key and remote lock ownership.

The id is generated once per data directory and stored in ``device_id``. A
replica only ever advances its own clock entry, so the id must survive
restarts. The remote lock file names its holder as
``<device id> <ISO timestamp> <hostname>``.
"""

from __future__ import annotations

import logging
import platform
import re
import secrets
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from replisync.utils.timeutils import parse_timestamp

logger = logging.getLogger(__name__)

DEVICE_ID_FILE = "device_id"

# Lock content is space separated, so ids must not contain whitespace
_VALID_ID = re.compile(r"[0-9A-Za-z._-]{1,64}")


def load_device_id(data_dir: Path) -> str:
    """Return this replica's device id, creating it on first use.

    A missing, blank or malformed ``device_id`` file is replaced by a fresh
    16-character hex id.
    """
    path = data_dir / DEVICE_ID_FILE
    try:
        stored = path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        stored = ""
    except OSError:
        logger.warning("Unreadable device id file %s, generating a new id", path, exc_info=True)
        stored = ""

    if _VALID_ID.fullmatch(stored):
        return stored
    if stored:
        logger.warning("Ignoring malformed device id in %s", path)

    device_id = secrets.token_hex(8)
    data_dir.mkdir(parents=True, exist_ok=True)
    path.write_text(device_id, encoding="utf-8")
    logger.info("Registered new device id %s", device_id)
    return device_id


def hostname() -> str:
    """Machine name shown to other devices, or ``"unknown"``."""
    return platform.node().strip() or "unknown"


@dataclass(frozen=True)
class LockOwner:
    """Holder of the remote ``__lock_`` file."""

    device_id: str
    acquired_at: datetime | None = None
    device_name: str = ""

    def encode(self) -> bytes:
        acquired = self.acquired_at.isoformat() if self.acquired_at else "-"
        return f"{self.device_id} {acquired} {self.device_name}".rstrip().encode("utf-8")

    @classmethod
    def decode(cls, content: bytes) -> LockOwner:
        """Parse lock content; fields written by older clients may be missing."""
        parts = content.decode("utf-8", errors="replace").strip().split(" ", 2)
        acquired_at: datetime | None = None
        if len(parts) > 1:
            try:
                acquired_at = parse_timestamp(parts[1])
            except ValueError:
                logger.debug("Unparseable lock timestamp %r", parts[1])
        return cls(
            device_id=parts[0] or "unknown",
            acquired_at=acquired_at,
            device_name=parts[2] if len(parts) > 2 else "",
        )

    def __str__(self) -> str:
        who = f"{self.device_name} ({self.device_id})" if self.device_name else self.device_id
        if self.acquired_at is None:
            return who
        return f"{who} since {self.acquired_at.isoformat(timespec='seconds')}"
