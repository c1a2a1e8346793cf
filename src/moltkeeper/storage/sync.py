"""Mirror the agent's config, workspace and skills to the mounted bucket.

Remote layout under the mount root::

    openclaw/      config directory (from .openclaw, or legacy .clawdbot)
    workspace/     agent working files, skills excluded
    skills/        agent extensions
    .last-sync     ISO-8601 timestamp of the last run

A sync is one bounded process (see ``StagedScript``). The result is read
from the exit code and the trailing output lines only.
"""

from __future__ import annotations

import asyncio
import shlex

from moltkeeper.config import GatewayConfig, StorageConfig
from moltkeeper.logger import logger
from moltkeeper.sandbox import Sandbox, SandboxError, SandboxTimeoutError
from moltkeeper.storage.mount import MountManager
from moltkeeper.storage.restore import build_restore_script, interpret_restore
from moltkeeper.storage.script import (
    GUARD_EXIT_CODE,
    TIMESTAMP_RE,
    ScriptOutput,
    StagedScript,
)
from moltkeeper.types import (
    CONFIG_RSYNC_FAILED,
    SKILLS_RSYNC_FAILED,
    WORKSPACE_RSYNC_FAILED,
    RestoreResult,
    StorageCredentials,
    SyncResult,
)

_RSYNC = "rsync -r --no-times --delete"
_CONFIG_EXCLUDES = ("*.lock", "*.log", "*.tmp", ".last-sync")


def build_sync_script(storage: StorageConfig, gateway: GatewayConfig) -> StagedScript:
    """Compose the single-process sync program."""
    q = shlex.quote
    remote = storage.mount_path
    primary = f"{gateway.config_dir}/{gateway.config_file}"
    legacy = f"{gateway.legacy_config_dir}/{gateway.legacy_config_file}"
    workspace = gateway.workspace_dir.rstrip("/")

    # A non-empty config file must exist, otherwise an empty container
    # would overwrite a good backup.
    guard = (
        f"if [ -s {q(primary)} ] && [ -r {q(primary)} ]; then CONFIG_DIR={q(gateway.config_dir)}\n"
        f"elif [ -s {q(legacy)} ] && [ -r {q(legacy)} ]; then "
        f"CONFIG_DIR={q(gateway.legacy_config_dir)}\n"
        f'else echo "Neither {gateway.config_file} nor {gateway.legacy_config_file} '
        f'readable" >&2; exit {GUARD_EXIT_CODE}\n'
        "fi"
    )
    excludes = " ".join(f"--exclude={q(pattern)}" for pattern in _CONFIG_EXCLUDES)
    marker = q(f"{remote}/.last-sync")

    script = StagedScript(guard=guard)
    script.add_stage(
        CONFIG_RSYNC_FAILED,
        f'{_RSYNC} {excludes} "$CONFIG_DIR/" {q(remote + "/openclaw/")}',
    )
    script.add_stage(
        WORKSPACE_RSYNC_FAILED,
        f"{_RSYNC} --exclude='skills' {q(workspace + '/')} {q(remote + '/workspace/')}",
    )
    script.add_stage(
        SKILLS_RSYNC_FAILED,
        f"{_RSYNC} {q(workspace + '/skills/')} {q(remote + '/skills/')}",
    )
    # Dated even when a stage failed, so a partial backup still shows its age
    script.always.append(f"date -Iseconds > {marker}")
    # Restore skips a backup no newer than the local marker
    local_marker = q(gateway.config_dir.rstrip("/") + "/.last-sync")
    script.on_success.append(
        f"mkdir -p {q(gateway.config_dir)} && cp -f {marker} {local_marker}"
    )
    script.report = f"cat {marker}"
    return script


def interpret(exit_code: int, stdout: str, stderr: str) -> SyncResult:
    """Map the sync process outcome to a SyncResult."""
    if exit_code == GUARD_EXIT_CODE:
        return SyncResult(
            success=False,
            error="Sync aborted: no config file found",
            details=stderr.strip() or None,
        )

    output = ScriptOutput.parse(stdout)
    last_sync = (
        output.last_line
        if output.last_line and TIMESTAMP_RE.match(output.last_line)
        else None
    )

    if output.failed_stages:
        return SyncResult(
            success=False,
            last_sync=last_sync,
            error="Partial sync failure",
            details=", ".join(output.failed_stages),
        )

    if last_sync:
        return SyncResult(success=True, last_sync=last_sync)

    return SyncResult(
        success=False,
        error="Sync failed",
        details=stderr.strip() or stdout.strip() or "No timestamp file created",
    )


class SyncEngine:
    """Runs syncs against the mounted bucket.

    Syncs within one process are serialized: the periodic loop and a manual
    ``POST /storage/sync`` must not rsync into the same prefix at once.
    """

    def __init__(
        self,
        sandbox: Sandbox,
        mounts: MountManager,
        storage: StorageConfig,
        gateway: GatewayConfig,
    ) -> None:
        self._sandbox = sandbox
        self._mounts = mounts
        self._storage = storage
        self._gateway = gateway
        self._lock = asyncio.Lock()

    async def sync_to_remote(self, credentials: StorageCredentials) -> SyncResult:
        if not credentials.is_complete:
            return SyncResult(success=False, error="Storage is not configured")

        if not await self._mounts.ensure_mounted(credentials):
            return SyncResult(success=False, error="Failed to mount storage")

        script = build_sync_script(self._storage, self._gateway)
        timeout = self._storage.sync_timeout_seconds

        async with self._lock:
            try:
                result = await script.run(self._sandbox, timeout=timeout)
            except SandboxTimeoutError:
                logger.error("Sync timed out", timeout_seconds=timeout)
                return SyncResult(
                    success=False,
                    error="Sync failed",
                    details=f"Sync timed out after {timeout:.0f}s",
                )
            except SandboxError as exc:
                logger.error("Sync could not run", err=str(exc))
                return SyncResult(success=False, error="Sync error", details=str(exc))

        outcome = interpret(result.exit_code, result.stdout, result.stderr)
        if outcome.success:
            logger.info("Sync completed", last_sync=outcome.last_sync)
        else:
            logger.warning(
                "Sync did not complete cleanly",
                error=outcome.error,
                details=outcome.details,
                last_sync=outcome.last_sync,
                exit_code=result.exit_code,
            )
        return outcome

    async def restore_from_remote(self, credentials: StorageCredentials) -> RestoreResult:
        """Copy the backup into the container when it is newer than local state."""
        if not credentials.is_complete:
            return RestoreResult(restored=False, details="Storage is not configured")

        if not await self._mounts.ensure_mounted(credentials):
            return RestoreResult(restored=False, error="Failed to mount storage")

        script = build_restore_script(self._storage, self._gateway)
        timeout = self._storage.sync_timeout_seconds

        async with self._lock:
            try:
                result = await script.run(self._sandbox, timeout=timeout)
            except SandboxTimeoutError:
                logger.error("Restore timed out", timeout_seconds=timeout)
                return RestoreResult(
                    restored=False,
                    error="Restore failed",
                    details=f"Restore timed out after {timeout:.0f}s",
                )
            except SandboxError as exc:
                logger.error("Restore could not run", err=str(exc))
                return RestoreResult(restored=False, error="Restore error", details=str(exc))

        outcome = interpret_restore(result.exit_code, result.stdout, result.stderr)
        if outcome.restored:
            logger.info("Restored from backup", last_sync=outcome.last_sync)
        elif outcome.error:
            logger.warning(
                "Restore did not complete cleanly",
                error=outcome.error,
                details=outcome.details,
                exit_code=result.exit_code,
            )
        else:
            logger.info("Restore skipped", reason=outcome.details)
        return outcome
