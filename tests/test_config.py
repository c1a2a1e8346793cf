"""Tests for the Settings loader."""

from __future__ import annotations

import os

import pytest
from pydantic import ValidationError

from moltkeeper.config import (
    GatewayConfig,
    Settings,
    StorageConfig,
    get_settings,
    reset_settings,
)


@pytest.fixture
def isolated(tmp_path, monkeypatch):
    """Run from an empty directory with no moltkeeper env vars."""
    monkeypatch.chdir(tmp_path)
    for prefix in ("STORAGE__", "GATEWAY__", "ADMIN__", "SERVER__", "LOGGING__"):
        for key in list(os.environ):
            if key.startswith(prefix):
                monkeypatch.delenv(key)
    reset_settings()
    yield tmp_path
    reset_settings()


class TestDefaults:
    def test_defaults_without_any_source(self, isolated):
        s = Settings()
        assert s.server.port == 8080
        assert s.gateway.port == 18789
        assert s.storage.mount_path == "/data/moltbot"
        assert s.storage.credentials().is_complete is False
        assert s.admin.token is None

    def test_gateway_ws_url(self):
        assert GatewayConfig(port=1234).ws_url == "ws://localhost:1234"


class TestSources:
    def test_env_vars_use_nested_delimiter(self, isolated, monkeypatch):
        monkeypatch.setenv("STORAGE__ACCESS_KEY_ID", "AKID")
        monkeypatch.setenv("STORAGE__SECRET_ACCESS_KEY", "SECRET")
        monkeypatch.setenv("STORAGE__ACCOUNT_ID", "acct")
        monkeypatch.setenv("GATEWAY__TOKEN", "gw-token")

        s = Settings()

        creds = s.storage.credentials()
        assert creds.is_complete
        assert creds.endpoint == "https://acct.r2.cloudflarestorage.com"
        assert s.gateway.token_value() == "gw-token"

    def test_toml_file(self, isolated):
        (isolated / "config.toml").write_text(
            '[server]\nport = 9000\n\n[storage]\nbucket_name = "backups"\n'
        )
        s = Settings()
        assert s.server.port == 9000
        assert s.storage.bucket_name == "backups"

    def test_env_beats_toml(self, isolated, monkeypatch):
        (isolated / "config.toml").write_text("[server]\nport = 9000\n")
        monkeypatch.setenv("SERVER__PORT", "9100")
        assert Settings().server.port == 9100

    def test_dotenv_file(self, isolated):
        (isolated / ".env").write_text("ADMIN__TOKEN=from-dotenv\n")
        assert Settings().admin.token.get_secret_value() == "from-dotenv"

    def test_unknown_section_key_rejected(self, isolated):
        (isolated / "config.toml").write_text("[gateway]\nprot = 1\n")
        with pytest.raises(ValidationError):
            Settings()


class TestValidation:
    def test_mount_path_trailing_slash_stripped(self):
        assert StorageConfig(mount_path="/data/moltbot/").mount_path == "/data/moltbot"

    def test_secrets_are_masked(self):
        config = StorageConfig(access_key_id="AKID")
        assert "AKID" not in repr(config)
        assert config.credentials().access_key_id == "AKID"


class TestSingleton:
    def test_cached_until_reset(self, isolated):
        first = get_settings()
        assert get_settings() is first
        reset_settings()
        assert get_settings() is not first
