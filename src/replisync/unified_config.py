"""Unified configuration for replisync.

Configuration is stored in ~/.replisync/config.toml (or $REPLISYNC_DIR).
The local revision store lives next to it in store.db, and the persistent
device identifier in device_id.

Secrets can be supplied through the environment instead of the file:
REPLISYNC_WEBDAV_PASSWORD and REPLISYNC_ENCRYPTION_KEY override the values
read from disk.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import tomllib
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

from replisync.sync.device import load_device_id
from replisync.sync.errors import MissingCredentialsSPError

logger = logging.getLogger(__name__)

_PROVIDERS = ("webdav",)


def get_replisync_dir() -> Path:
    """Get the replisync data directory.

    Priority:
    1. REPLISYNC_DIR environment variable
    2. ~/.replisync/
    """
    env_dir = os.environ.get("REPLISYNC_DIR")
    if env_dir:
        return Path(env_dir)
    return Path.home() / ".replisync"


def _toml_str(value: str) -> str:
    # JSON string escapes are a subset of TOML basic-string escapes
    return json.dumps(value, ensure_ascii=False)


def _toml_bool(value: bool) -> str:
    return "true" if value else "false"


@dataclass(frozen=True)
class WebdavConfig:
    """Connection settings for the WebDAV backend."""

    base_url: str = ""
    username: str = ""
    password: str = ""
    sync_folder_path: str = "/"

    @property
    def is_complete(self) -> bool:
        return bool(self.base_url and self.username and self.password)

    def validate(self) -> WebdavConfig:
        """Return a normalized copy, raising if required fields are missing.

        Raises:
            MissingCredentialsSPError: If URL, user or password is empty or
                the URL scheme is not http(s).
        """
        if not self.is_complete:
            raise MissingCredentialsSPError("WebDAV base URL, username and password are required")
        if urlsplit(self.base_url).scheme not in ("http", "https"):
            raise MissingCredentialsSPError(f"Invalid WebDAV URL scheme: {self.base_url!r}")

        folder = "/" + self.sync_folder_path.strip().strip("/")
        return replace(self, base_url=self.base_url.strip().rstrip("/"), sync_folder_path=folder)

    def to_dict(self) -> dict[str, Any]:
        return {
            "base_url": self.base_url,
            "username": self.username,
            "password": self.password,
            "sync_folder_path": self.sync_folder_path,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WebdavConfig:
        return cls(
            base_url=str(data.get("base_url", "")),
            username=str(data.get("username", "")),
            password=os.environ.get("REPLISYNC_WEBDAV_PASSWORD") or str(data.get("password", "")),
            sync_folder_path=str(data.get("sync_folder_path", "/")),
        )


@dataclass(frozen=True)
class SyncSettings:
    """Sync behavior settings."""

    enabled: bool = False
    provider: str = "webdav"
    sync_interval_minutes: int = 15
    request_timeout: float = 30.0
    encrypt: bool = False
    encryption_key: str | None = None
    # Key read from config.toml; an environment key is never written back
    stored_encryption_key: str | None = field(default=None, repr=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "provider": self.provider,
            "sync_interval_minutes": self.sync_interval_minutes,
            "request_timeout": self.request_timeout,
            "encrypt": self.encrypt,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncSettings:
        provider = str(data.get("provider", "webdav"))
        if provider not in _PROVIDERS:
            logger.warning("Unknown sync provider %r, falling back to webdav", provider)
            provider = "webdav"
        stored_key = data.get("encryption_key") or None
        return cls(
            enabled=bool(data.get("enabled", False)),
            provider=provider,
            sync_interval_minutes=max(1, int(data.get("sync_interval_minutes", 15))),
            request_timeout=float(data.get("request_timeout", 30.0)),
            encrypt=bool(data.get("encrypt", False)),
            encryption_key=os.environ.get("REPLISYNC_ENCRYPTION_KEY") or stored_key,
            stored_encryption_key=stored_key,
        )


@dataclass
class UnifiedConfig:
    """Unified configuration shared by the CLI and embedding applications.

    Storage location: ~/.replisync/config.toml
    """

    data_dir: Path = field(default_factory=get_replisync_dir)
    sync: SyncSettings = field(default_factory=SyncSettings)
    webdav: WebdavConfig = field(default_factory=WebdavConfig)
    verbose: bool = False

    version: str = "1.0"
    updated_at: datetime | None = None

    @classmethod
    def load(cls, config_path: Path | None = None) -> UnifiedConfig:
        """Load configuration from file, or create default if it doesn't exist."""
        if config_path is None:
            data_dir = get_replisync_dir()
            config_path = data_dir / "config.toml"
        else:
            data_dir = config_path.parent

        if not config_path.exists():
            config = cls(data_dir=data_dir)
            config.save()
            logger.info("Created default configuration at %s", config_path)
            return config

        with open(config_path, "rb") as f:
            data = tomllib.load(f)

        return cls(
            data_dir=data_dir,
            sync=SyncSettings.from_dict(data.get("sync", {})),
            webdav=WebdavConfig.from_dict(data.get("webdav", {})),
            verbose=bool(data.get("cli", {}).get("verbose", False)),
            version=data.get("version", "1.0"),
        )

    def save(self) -> None:
        """Save configuration to TOML file (atomic write via temp+rename)."""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        config_path = self.config_path

        # Build TOML content manually (no toml write dependency)
        lines = [
            "# replisync configuration",
            "",
            f"version = {_toml_str(self.version)}",
            "",
            "[sync]",
            f"enabled = {_toml_bool(self.sync.enabled)}",
            f"provider = {_toml_str(self.sync.provider)}",
            f"sync_interval_minutes = {self.sync.sync_interval_minutes}",
            f"request_timeout = {self.sync.request_timeout}",
            f"encrypt = {_toml_bool(self.sync.encrypt)}",
        ]
        if self.sync.stored_encryption_key:
            lines.append(f"encryption_key = {_toml_str(self.sync.stored_encryption_key)}")
        lines += [
            "",
            "[webdav]",
            f"base_url = {_toml_str(self.webdav.base_url)}",
            f"username = {_toml_str(self.webdav.username)}",
            f"password = {_toml_str(self.webdav.password)}",
            f"sync_folder_path = {_toml_str(self.webdav.sync_folder_path)}",
            "",
            "[cli]",
            f"verbose = {_toml_bool(self.verbose)}",
        ]

        content = "\n".join(lines) + "\n"
        fd, tmp_path = tempfile.mkstemp(dir=str(self.data_dir), suffix=".toml.tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            Path(tmp_path).replace(config_path)
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise
        try:
            config_path.chmod(0o600)
        except OSError:
            logger.warning("Could not restrict config file permissions: %s", config_path)

    @property
    def config_path(self) -> Path:
        return self.data_dir / "config.toml"

    @property
    def store_path(self) -> Path:
        """SQLite database holding the local revision store."""
        return self.data_dir / "store.db"

    @property
    def device_id(self) -> str:
        return load_device_id(self.data_dir)


_config: UnifiedConfig | None = None


def get_config(reload: bool = False) -> UnifiedConfig:
    """Get the unified configuration (singleton)."""
    global _config
    if _config is None or reload:
        _config = UnifiedConfig.load()
    return _config
