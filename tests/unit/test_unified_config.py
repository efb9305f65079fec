"""Tests for unified_config.py."""

from __future__ import annotations

import stat
import sys
from dataclasses import replace
from pathlib import Path

import pytest

from replisync.sync.errors import MissingCredentialsSPError
from replisync.unified_config import (
    SyncSettings,
    UnifiedConfig,
    WebdavConfig,
    get_replisync_dir,
)


class TestReplisyncDir:
    def test_env_override(self, data_dir: Path) -> None:
        assert get_replisync_dir() == data_dir

    def test_default(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        monkeypatch.delenv("REPLISYNC_DIR", raising=False)
        monkeypatch.setattr(Path, "home", lambda: tmp_path)
        assert get_replisync_dir() == tmp_path / ".replisync"


class TestLoadSave:
    def test_creates_default(self, data_dir: Path) -> None:
        config = UnifiedConfig.load()

        assert config.config_path.exists()
        assert config.data_dir == data_dir
        assert not config.sync.enabled
        assert config.webdav == WebdavConfig()

    def test_round_trip(self, data_dir: Path) -> None:
        config = UnifiedConfig(
            data_dir=data_dir,
            sync=SyncSettings(enabled=True, sync_interval_minutes=5, encrypt=True),
            webdav=WebdavConfig(
                base_url="https://dav.example.com",
                username="alice",
                password='pa"ss\\word',
                sync_folder_path="/notes",
            ),
            verbose=True,
        )
        config.save()

        loaded = UnifiedConfig.load()

        assert loaded.sync.enabled
        assert loaded.sync.sync_interval_minutes == 5
        assert loaded.sync.encrypt
        assert loaded.webdav == config.webdav
        assert loaded.verbose

    def test_encryption_key_never_written(self, data_dir: Path) -> None:
        UnifiedConfig(data_dir=data_dir, sync=SyncSettings(encryption_key="secret-key")).save()
        assert "secret-key" not in (data_dir / "config.toml").read_text(encoding="utf-8")

    def test_key_from_file_survives_save(self, data_dir: Path) -> None:
        UnifiedConfig(data_dir=data_dir).save()
        config_path = data_dir / "config.toml"
        content = config_path.read_text(encoding="utf-8")
        config_path.write_text(
            content.replace("encrypt = false", 'encrypt = true\nencryption_key = "hand-edited"'),
            encoding="utf-8",
        )

        loaded = UnifiedConfig.load()
        replace(loaded, verbose=True).save()
        reloaded = UnifiedConfig.load()

        assert loaded.sync.encryption_key == "hand-edited"
        assert reloaded.sync.encrypt
        assert reloaded.sync.encryption_key == "hand-edited"

    def test_env_key_not_persisted_over_file_key(
        self, data_dir: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        UnifiedConfig(
            data_dir=data_dir, sync=SyncSettings(stored_encryption_key="file-key")
        ).save()
        monkeypatch.setenv("REPLISYNC_ENCRYPTION_KEY", "key-from-env")

        loaded = UnifiedConfig.load()
        loaded.save()
        content = (data_dir / "config.toml").read_text(encoding="utf-8")

        assert loaded.sync.encryption_key == "key-from-env"
        assert "key-from-env" not in content
        assert 'encryption_key = "file-key"' in content

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions")
    def test_file_is_private(self, data_dir: Path) -> None:
        config = UnifiedConfig.load()
        mode = stat.S_IMODE(config.config_path.stat().st_mode)
        assert mode == 0o600

    def test_env_secrets_override_file(
        self, data_dir: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        UnifiedConfig(
            data_dir=data_dir,
            webdav=WebdavConfig(base_url="https://dav.example.com", username="u", password="file"),
        ).save()
        monkeypatch.setenv("REPLISYNC_WEBDAV_PASSWORD", "from-env")
        monkeypatch.setenv("REPLISYNC_ENCRYPTION_KEY", "key-from-env")

        loaded = UnifiedConfig.load()

        assert loaded.webdav.password == "from-env"
        assert loaded.sync.encryption_key == "key-from-env"

    def test_unknown_provider_falls_back(self) -> None:
        settings = SyncSettings.from_dict({"provider": "dropbox", "sync_interval_minutes": 0})
        assert settings.provider == "webdav"
        assert settings.sync_interval_minutes == 1

    def test_store_path(self, data_dir: Path) -> None:
        assert UnifiedConfig.load().store_path == data_dir / "store.db"


class TestWebdavValidate:
    def test_normalizes(self) -> None:
        cfg = WebdavConfig(
            base_url="https://dav.example.com/dav/ ",
            username="u",
            password="p",
            sync_folder_path=" notes/ ",
        ).validate()

        assert cfg.base_url == "https://dav.example.com/dav"
        assert cfg.sync_folder_path == "/notes"

    @pytest.mark.parametrize(
        "cfg",
        [
            WebdavConfig(),
            WebdavConfig(base_url="https://dav.example.com", username="u"),
            WebdavConfig(base_url="dav.example.com", username="u", password="p"),
        ],
    )
    def test_rejects_incomplete(self, cfg: WebdavConfig) -> None:
        with pytest.raises(MissingCredentialsSPError):
            cfg.validate()
