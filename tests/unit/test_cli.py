"""Tests for the replisync CLI."""

from __future__ import annotations

import json
from dataclasses import replace
from pathlib import Path

import pytest
import typer
from typer.testing import CliRunner

from replisync.cli import _helpers, app
from replisync.cli._helpers import print_result, prompt_conflict, remember_auth
from replisync.sync.errors import ErrorKind
from replisync.sync.protocol import ConflictDecision, SyncOutcome, SyncResult, SyncStatus
from replisync.sync.sync_engine import ConflictRequest
from replisync.unified_config import UnifiedConfig
from tests.fakes import FakeRemote

runner = CliRunner()


def _configure(data_dir: Path) -> None:
    result = runner.invoke(
        app,
        ["config", "set-webdav", "https://dav.example.com/dav", "-u", "alice", "-p", "secret"],
    )
    assert result.exit_code == 0, result.output


# ── Basic commands ───────────────────────────────────────────────


class TestVersion:
    def test_version(self, data_dir: Path) -> None:
        result = runner.invoke(app, ["version"])
        assert result.exit_code == 0
        assert "replisync v" in result.output


class TestConfigCommands:
    def test_set_webdav_persists(self, data_dir: Path) -> None:
        result = runner.invoke(
            app,
            [
                "config",
                "set-webdav",
                "https://dav.example.com/dav/",
                "-u",
                "alice",
                "-p",
                "secret",
                "--folder",
                "notes/",
            ],
        )

        assert result.exit_code == 0, result.output
        config = UnifiedConfig.load()
        assert config.webdav.base_url == "https://dav.example.com/dav"
        assert config.webdav.username == "alice"
        assert config.webdav.password == "secret"
        assert config.webdav.sync_folder_path == "/notes"
        assert config.sync.enabled

    def test_set_webdav_prompts_for_password(self, data_dir: Path) -> None:
        result = runner.invoke(
            app,
            ["config", "set-webdav", "https://dav.example.com", "-u", "alice"],
            input="prompted\nprompted\n",
        )

        assert result.exit_code == 0, result.output
        assert UnifiedConfig.load().webdav.password == "prompted"

    def test_set_webdav_rejects_bad_url(self, data_dir: Path) -> None:
        result = runner.invoke(
            app, ["config", "set-webdav", "ftp://dav.example.com", "-u", "alice", "-p", "x"]
        )

        assert result.exit_code == 1
        assert not UnifiedConfig.load().webdav.is_complete

    def test_set_webdav_keeps_hand_edited_key(self, data_dir: Path) -> None:
        _configure(data_dir)
        config_path = data_dir / "config.toml"
        content = config_path.read_text(encoding="utf-8")
        config_path.write_text(
            content.replace("encrypt = false", 'encrypt = true\nencryption_key = "hunter2"'),
            encoding="utf-8",
        )

        _configure(data_dir)

        config = UnifiedConfig.load()
        assert config.sync.encrypt
        assert config.sync.encryption_key == "hunter2"

    def test_show_masks_password(self, data_dir: Path) -> None:
        _configure(data_dir)

        result = runner.invoke(app, ["config", "show", "--json"])

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["webdav"]["password"] == "********"
        assert data["webdav"]["username"] == "alice"
        assert data["sync"]["enabled"] is True
        assert len(data["device_id"]) == 16


class TestStatus:
    def test_fresh_store(self, data_dir: Path) -> None:
        result = runner.invoke(app, ["status", "--json"])

        assert result.exit_code == 0, result.output
        info = json.loads(result.output)
        assert info["models"] == 0
        assert info["unsynced_models"] == []
        assert info["vector_clock"] == {}
        assert info["remote"] is None
        assert (data_dir / "store.db").exists()

    def test_text_output(self, data_dir: Path) -> None:
        result = runner.invoke(app, ["status"])
        assert result.exit_code == 0
        assert "[CLEAN]" in result.output


# ── Sync commands ────────────────────────────────────────────────


class TestSyncCommand:
    def test_requires_remote(self, data_dir: Path) -> None:
        result = runner.invoke(app, ["sync"])
        assert result.exit_code == 1
        assert "No WebDAV remote configured" in result.output

    def test_sync_uploads_to_empty_remote(
        self, data_dir: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        _configure(data_dir)
        remote = FakeRemote()
        monkeypatch.setattr(_helpers, "make_client", lambda config: remote)

        result = runner.invoke(app, ["sync", "--non-interactive"])

        assert result.exit_code == 0, result.output
        assert "UpdateRemoteAll" in result.output
        assert "replisync/__meta_" in remote.files

    def test_lock_present_fails_with_hint(
        self, data_dir: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        _configure(data_dir)
        remote = FakeRemote()
        remote.put("replisync/__lock_", b"other-device")
        monkeypatch.setattr(_helpers, "make_client", lambda config: remote)

        result = runner.invoke(app, ["sync", "--non-interactive"])

        assert result.exit_code == 1
        assert "force-upload" in result.output

    def test_encrypt_without_key_uploads_nothing(
        self, data_dir: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        _configure(data_dir)
        config = UnifiedConfig.load()
        replace(config, sync=replace(config.sync, encrypt=True)).save()
        remote = FakeRemote()
        monkeypatch.setattr(_helpers, "make_client", lambda config: remote)

        result = runner.invoke(app, ["sync", "--non-interactive"])

        assert result.exit_code == 1
        assert remote.files == {}

    def test_force_download_needs_confirmation(
        self, data_dir: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        _configure(data_dir)
        remote = FakeRemote()
        monkeypatch.setattr(_helpers, "make_client", lambda config: remote)

        result = runner.invoke(app, ["force-download"], input="n\n")

        assert result.exit_code == 1
        assert remote.calls == []


# ── Helpers ──────────────────────────────────────────────────────


class TestPrintResult:
    def test_failed_exits_non_zero(self) -> None:
        result = SyncResult(
            SyncOutcome.FAILED, error_kind=ErrorKind.LOCK_PRESENT, message="locked"
        )
        with pytest.raises(typer.Exit) as exc_info:
            print_result(result)
        assert exc_info.value.exit_code == 1

    def test_completed(self, capsys: pytest.CaptureFixture[str]) -> None:
        print_result(SyncResult(SyncOutcome.COMPLETED, status=SyncStatus.IN_SYNC))
        assert "[OK] InSync" in capsys.readouterr().out


class TestRememberAuth:
    def test_verified_settings_saved(self, data_dir: Path) -> None:
        _configure(data_dir)
        config = UnifiedConfig.load()

        remember_auth(config)({"username": "bob", "password": "token-1"})

        reloaded = UnifiedConfig.load()
        assert reloaded.webdav.username == "bob"
        assert reloaded.webdav.password == "token-1"
        assert reloaded.webdav.base_url == "https://dav.example.com/dav"
        assert config.webdav.username == "bob"


class TestPromptConflict:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("answer", "decision"),
        [
            ("l", ConflictDecision.USE_LOCAL),
            ("Remote", ConflictDecision.USE_REMOTE),
            ("c", ConflictDecision.CANCEL),
            ("?", ConflictDecision.CANCEL),
        ],
    )
    async def test_choice(
        self, monkeypatch: pytest.MonkeyPatch, answer: str, decision: ConflictDecision
    ) -> None:
        monkeypatch.setattr(typer, "prompt", lambda *args, **kwargs: answer)
        request = ConflictRequest()

        prompt_conflict(request)

        assert await request.wait() == decision
