"""Centralized configuration: Pydantic BaseSettings with TOML + dotenv sources.

Non-secret settings live in config.toml. Secrets (bucket keys, gateway and
admin tokens) live in .env. Environment variables override both using ``__``
as the nested delimiter (e.g. ``STORAGE__ACCESS_KEY_ID``). Secrets use
SecretStr for masking in logs.

Priority (highest wins): init args > env vars > .env > config.toml

Usage::

    from moltkeeper.config import get_settings

    s = get_settings()
    print(s.storage.mount_path)
    print(s.gateway.port)
"""

from __future__ import annotations

from pydantic import BaseModel, SecretStr, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

from moltkeeper.types import StorageCredentials

# ---------------------------------------------------------------------------
# Sub-models (each maps to a [section] in config.toml)
# ---------------------------------------------------------------------------


class _StrictModel(BaseModel):
    """Base for all config sub-models. Rejects unknown keys so typos fail loudly."""

    model_config = {"extra": "forbid"}


class ServerConfig(_StrictModel):
    host: str = "0.0.0.0"
    port: int = 8080


class LoggingConfig(_StrictModel):
    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        return v.upper()


class StorageConfig(_StrictModel):
    """Durable object storage (R2 bucket mounted with s3fs)."""

    bucket_name: str = "moltbot-data"
    mount_path: str = "/data/moltbot"
    access_key_id: SecretStr | None = None
    secret_access_key: SecretStr | None = None
    account_id: str | None = None
    mount_check_timeout_seconds: float = 5
    mount_timeout_seconds: float = 60
    sync_timeout_seconds: float = 600  # s3fs is slow
    sync_interval_seconds: float = 300  # 0 disables the periodic sync

    @field_validator("mount_path")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/") or "/"

    def credentials(self) -> StorageCredentials:
        return StorageCredentials(
            access_key_id=(
                self.access_key_id.get_secret_value() if self.access_key_id else None
            ),
            secret_access_key=(
                self.secret_access_key.get_secret_value() if self.secret_access_key else None
            ),
            account_id=self.account_id,
        )


class GatewayConfig(_StrictModel):
    """The supervised OpenClaw gateway process and its CLI."""

    port: int = 18789
    bind: str = "lan"
    token: SecretStr | None = None
    cli: str = "openclaw"
    config_dir: str = "/root/.openclaw"
    config_file: str = "openclaw.json"
    legacy_config_dir: str = "/root/.clawdbot"
    legacy_config_file: str = "clawdbot.json"
    workspace_dir: str = "/root/clawd"
    pairing_search_dirs: list[str] = ["/root/.openclaw/", "/home/*/.openclaw/"]
    lock_files: list[str] = [
        "/tmp/openclaw-gateway.lock",
        "/root/.openclaw/gateway.lock",
    ]
    startup_timeout_seconds: float = 600  # large restores through s3fs are slow
    cli_timeout_seconds: float = 20  # CLI opens a websocket per call
    restart_grace_seconds: float = 2

    @property
    def ws_url(self) -> str:
        return f"ws://localhost:{self.port}"

    def token_value(self) -> str | None:
        return self.token.get_secret_value() if self.token else None


class AdminConfig(_StrictModel):
    """Admin API authorization. JWT verification plugs in as an Authorizer."""

    token: SecretStr | None = None
    allow_unauthenticated: bool = False


# ---------------------------------------------------------------------------
# Root Settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        toml_file="config.toml",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    server: ServerConfig = ServerConfig()
    logging: LoggingConfig = LoggingConfig()
    storage: StorageConfig = StorageConfig()
    gateway: GatewayConfig = GatewayConfig()
    admin: AdminConfig = AdminConfig()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Priority: init > env vars > .env > config.toml > file secrets."""
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_settings: Settings | None = None


def get_settings() -> Settings:
    """Lazy cached singleton."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Clear the cached singleton (for tests)."""
    global _settings
    _settings = None
