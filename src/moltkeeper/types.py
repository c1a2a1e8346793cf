"""Core type definitions for moltkeeper."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal

ProcessStatus = Literal["starting", "running", "exited", "killed"]

LIVE_STATUSES: frozenset[str] = frozenset({"starting", "running"})

# Failure tags emitted by the sync script, one per mirror stage
CONFIG_RSYNC_FAILED = "config_rsync_failed"
WORKSPACE_RSYNC_FAILED = "workspace_rsync_failed"
SKILLS_RSYNC_FAILED = "skills_rsync_failed"

# Failure tags emitted by the restore script
CONFIG_RESTORE_FAILED = "config_restore_failed"
WORKSPACE_RESTORE_FAILED = "workspace_restore_failed"
SKILLS_RESTORE_FAILED = "skills_restore_failed"


@dataclass(frozen=True)
class StorageCredentials:
    """Bucket credentials. Any field may be absent (feature disabled)."""

    access_key_id: str | None = None
    secret_access_key: str | None = None
    account_id: str | None = None

    # Env var names reported by the status route, in field order
    ENV_NAMES = (
        "STORAGE__ACCESS_KEY_ID",
        "STORAGE__SECRET_ACCESS_KEY",
        "STORAGE__ACCOUNT_ID",
    )

    def missing(self) -> list[str]:
        values = (self.access_key_id, self.secret_access_key, self.account_id)
        return [name for name, value in zip(self.ENV_NAMES, values, strict=True) if not value]

    @property
    def is_complete(self) -> bool:
        return not self.missing()

    @property
    def endpoint(self) -> str:
        return f"https://{self.account_id}.r2.cloudflarestorage.com"


@dataclass
class SyncResult:
    """Outcome of one sync run.

    ``success`` implies ``last_sync``; a failure always carries ``error``.
    A partial failure is a failure that may still carry ``last_sync``.
    """

    success: bool
    last_sync: str | None = None
    error: str | None = None
    details: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"success": self.success}
        if self.last_sync is not None:
            data["lastSync"] = self.last_sync
        if self.error is not None:
            data["error"] = self.error
        if self.details is not None:
            data["details"] = self.details
        return data


@dataclass
class RestoreResult:
    """Outcome of restoring local state from the bucket.

    ``restored`` is False both when nothing needed restoring (``error`` is
    None, ``details`` says why) and when the restore failed.
    """

    restored: bool
    last_sync: str | None = None
    error: str | None = None
    details: str | None = None
