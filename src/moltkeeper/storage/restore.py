"""Restore agent state from the mounted bucket before the gateway starts.

The mirror of ``sync``: config (current ``openclaw/`` prefix, else the
legacy ``clawdbot/`` prefix, else the flat pre-prefix layout), workspace and
skills are copied back into the container, but only when the bucket's
``.last-sync`` is newer than the local copy of it. A successful restore
copies the remote marker next to the local config, so the same backup is
not restored twice.
"""

from __future__ import annotations

import shlex

from moltkeeper.config import GatewayConfig, StorageConfig
from moltkeeper.storage.script import (
    GUARD_EXIT_CODE,
    TIMESTAMP_RE,
    ScriptOutput,
    StagedScript,
)
from moltkeeper.types import (
    CONFIG_RESTORE_FAILED,
    SKILLS_RESTORE_FAILED,
    WORKSPACE_RESTORE_FAILED,
    RestoreResult,
)


def _non_empty_dir(path: str) -> str:
    q = shlex.quote
    return f'[ -d {q(path)} ] && [ -n "$(ls -A {q(path)} 2>/dev/null)" ]'


def build_restore_script(storage: StorageConfig, gateway: GatewayConfig) -> StagedScript:
    """Compose the single-process restore program."""
    q = shlex.quote
    remote = storage.mount_path
    config_dir = gateway.config_dir.rstrip("/")
    workspace = gateway.workspace_dir.rstrip("/")
    remote_marker = q(f"{remote}/.last-sync")
    local_marker = q(f"{config_dir}/.last-sync")

    # Exit 1 means "nothing to restore"; dates that fail to parse count as epoch 0
    guard = (
        f"mkdir -p {q(config_dir)}\n"
        f"if [ ! -s {remote_marker} ]; then "
        f'echo "No remote sync timestamp, skipping restore" >&2; exit {GUARD_EXIT_CODE}; fi\n'
        f"if [ -f {local_marker} ]; then\n"
        f'  REMOTE_EPOCH=$(date -d "$(cat {remote_marker})" +%s 2>/dev/null || echo 0)\n'
        f'  LOCAL_EPOCH=$(date -d "$(cat {local_marker})" +%s 2>/dev/null || echo 0)\n'
        f'  if [ "$REMOTE_EPOCH" -le "$LOCAL_EPOCH" ]; then '
        f'echo "Local data is newer or same, skipping restore" >&2; exit {GUARD_EXIT_CODE}; fi\n'
        "fi"
    )

    primary = f"{config_dir}/{gateway.config_file}"
    legacy = f"{config_dir}/{gateway.legacy_config_file}"
    rename = (
        f"if [ -f {q(legacy)} ] && [ ! -f {q(primary)} ]; then mv {q(legacy)} {q(primary)}; fi"
    )
    config_cmd = (
        f"if [ -f {q(f'{remote}/openclaw/{gateway.config_file}')} ]; then "
        f"cp -a {q(f'{remote}/openclaw/.')} {q(config_dir + '/')}; "
        f"elif [ -f {q(f'{remote}/clawdbot/{gateway.legacy_config_file}')} ]; then "
        f"cp -a {q(f'{remote}/clawdbot/.')} {q(config_dir + '/')} && {{ {rename}; }}; "
        f"elif [ -f {q(f'{remote}/{gateway.legacy_config_file}')} ]; then "
        f"cp -a {q(f'{remote}/.')} {q(config_dir + '/')} && {{ {rename}; }}; "
        "fi"
    )

    script = StagedScript(guard=guard)
    script.add_stage(CONFIG_RESTORE_FAILED, config_cmd)
    script.add_stage(
        WORKSPACE_RESTORE_FAILED,
        f"if {_non_empty_dir(f'{remote}/workspace')}; then "
        f"mkdir -p {q(workspace)} && cp -a {q(f'{remote}/workspace/.')} {q(workspace + '/')}; fi",
    )
    script.add_stage(
        SKILLS_RESTORE_FAILED,
        f"if {_non_empty_dir(f'{remote}/skills')}; then "
        f"mkdir -p {q(workspace + '/skills')} && "
        f"cp -a {q(f'{remote}/skills/.')} {q(workspace + '/skills/')}; fi",
    )
    # A partial restore leaves the local marker stale so the next start retries
    script.on_success.append(f"cp -f {remote_marker} {local_marker}")
    script.report = f"cat {remote_marker}"
    return script


def interpret_restore(exit_code: int, stdout: str, stderr: str) -> RestoreResult:
    """Map the restore process outcome to a RestoreResult."""
    if exit_code == GUARD_EXIT_CODE:
        return RestoreResult(restored=False, details=stderr.strip() or None)

    output = ScriptOutput.parse(stdout)
    last_sync = (
        output.last_line
        if output.last_line and TIMESTAMP_RE.match(output.last_line)
        else None
    )

    if output.failed_stages:
        return RestoreResult(
            restored=False,
            last_sync=last_sync,
            error="Partial restore failure",
            details=", ".join(output.failed_stages),
        )

    if last_sync:
        return RestoreResult(restored=True, last_sync=last_sync)

    return RestoreResult(
        restored=False,
        error="Restore failed",
        details=stderr.strip() or stdout.strip() or "Remote timestamp unreadable",
    )
