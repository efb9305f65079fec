"""Pytest configuration and fixtures."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest

from replisync.sync.protocol import SyncMetadata
from replisync.sync.revision_store import InMemoryRevisionStore
from replisync.unified_config import WebdavConfig
from tests.fakes import FakeRemote, publish_remote


@pytest.fixture
def remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def publish() -> Callable[..., SyncMetadata]:
    return publish_remote


@pytest.fixture
def store() -> InMemoryRevisionStore:
    return InMemoryRevisionStore()


@pytest.fixture
def webdav_config() -> WebdavConfig:
    return WebdavConfig(
        base_url="https://dav.example.com/root/",
        username="alice",
        password="secret",
        sync_folder_path="/sync",
    )


@pytest.fixture
def data_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Isolated replisync data directory."""
    path = tmp_path / "replisync"
    monkeypatch.setenv("REPLISYNC_DIR", str(path))
    monkeypatch.delenv("REPLISYNC_WEBDAV_PASSWORD", raising=False)
    monkeypatch.delenv("REPLISYNC_ENCRYPTION_KEY", raising=False)
    return path
