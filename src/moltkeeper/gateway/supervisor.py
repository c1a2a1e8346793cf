"""Lifecycle of the single OpenClaw gateway process.

The supervisor is the only code that spawns gateway processes, so at most
one live gateway exists. It never copies process state: every decision is
made from a fresh ``list_processes()`` snapshot of the sandbox.
"""

from __future__ import annotations

import asyncio
import contextlib
import shlex
from collections.abc import Awaitable, Callable
from typing import Any

from moltkeeper.config import GatewayConfig
from moltkeeper.logger import logger, redact_token_args
from moltkeeper.sandbox import ManagedProcess, Sandbox, SandboxError
from moltkeeper.tasks import BackgroundTasks
from moltkeeper.types import LIVE_STATUSES

_GATEWAY_SIGNATURES = (
    "start-openclaw.sh",
    "openclaw gateway",
    # pre-rename installs
    "start-moltbot.sh",
    "clawdbot gateway",
)
_CLI_SIGNATURES = ("openclaw devices", "clawdbot devices", "--version")

COMMAND_DISPLAY_LIMIT = 200


class GatewayStartError(Exception):
    """The gateway process exited or never opened its port."""


def is_gateway_command(command: str) -> bool:
    """True for the gateway's own invocation, False for CLI calls against it."""
    if not any(sig in command for sig in _GATEWAY_SIGNATURES):
        return False
    return not any(sig in command for sig in _CLI_SIGNATURES)


def redact_command(command: str, limit: int = COMMAND_DISPLAY_LIMIT) -> str:
    """Mask token arguments and truncate for display."""
    return redact_token_args(command)[:limit]


def describe_process(proc: ManagedProcess) -> dict[str, Any]:
    return {
        "id": proc.id,
        "command": redact_command(proc.command),
        "status": proc.status,
        "exitCode": proc.exit_code,
    }


class ProcessSupervisor:
    def __init__(
        self,
        sandbox: Sandbox,
        config: GatewayConfig,
        tasks: BackgroundTasks,
        *,
        before_spawn: Callable[[], Awaitable[object]] | None = None,
    ) -> None:
        self._sandbox = sandbox
        self._config = config
        self._tasks = tasks
        self._before_spawn = before_spawn
        self._spawn_lock = asyncio.Lock()

    async def find_existing(self) -> ManagedProcess | None:
        """Return the live gateway process, if any (first match wins)."""
        for proc in await self._sandbox.list_processes():
            if proc.status in LIVE_STATUSES and is_gateway_command(proc.command):
                return proc
        return None

    def build_command(self) -> str:
        """Shell command that clears stale locks and execs the gateway."""
        cfg = self._config
        args = [
            cfg.cli,
            "gateway",
            "--port",
            str(cfg.port),
            "--bind",
            cfg.bind,
            "--allow-unconfigured",
        ]
        token = cfg.token_value()
        if token:
            args += ["--token", token]
        locks = " ".join(shlex.quote(path) for path in cfg.lock_files)
        gateway = " ".join(shlex.quote(arg) for arg in args)
        if not locks:
            return f"exec {gateway}"
        return f"rm -f {locks} 2>/dev/null; exec {gateway}"

    async def ensure_running(self) -> ManagedProcess:
        """Return the live gateway, starting one if none exists."""
        async with self._spawn_lock:
            existing = await self.find_existing()
            if existing is not None:
                logger.debug("Gateway already running", process=existing.id)
                return existing
            return await self._spawn()

    async def _spawn(self) -> ManagedProcess:
        if self._before_spawn is not None:
            try:
                await self._before_spawn()
            except Exception:
                # A failed restore must not keep the gateway down
                logger.exception("Pre-start hook failed, starting gateway anyway")
        port = self._config.port
        logger.info("Starting gateway", port=port, bind=self._config.bind)
        proc = await self._sandbox.start_process(self.build_command())
        try:
            await proc.wait_for_port(port, timeout=self._config.startup_timeout_seconds)
        except SandboxError as exc:
            logs = await proc.get_logs()
            logger.error(
                "Gateway failed to start",
                process=proc.id,
                err=str(exc),
                stdout_tail=logs.stdout[-500:],
                stderr_tail=logs.stderr[-500:],
            )
            # Don't leave a half-started gateway behind to block the next attempt
            with contextlib.suppress(SandboxError):
                await proc.kill()
            raise GatewayStartError(f"Gateway failed to start: {exc}") from exc
        logger.info("Gateway is listening", process=proc.id, port=port)
        return proc

    async def restart(self) -> ManagedProcess | None:
        """Schedule a kill-and-respawn and return the process being replaced.

        The replacement runs on the background task registry so the caller
        can answer its HTTP request right away.
        """
        previous = await self.find_existing()
        self._tasks.spawn(self._replace(previous), name="gateway-restart")
        return previous

    async def _replace(self, previous: ManagedProcess | None) -> None:
        if previous is not None:
            logger.info("Killing gateway process", process=previous.id)
            try:
                await previous.kill()
            except Exception as exc:
                logger.warning(
                    "Failed to kill gateway process, starting a new one anyway",
                    process=previous.id,
                    err=str(exc),
                )
            await asyncio.sleep(self._config.restart_grace_seconds)
        async with self._spawn_lock:
            await self._spawn()

    async def list_processes(self) -> list[ManagedProcess]:
        return list(await self._sandbox.list_processes())

    async def kill_all(self) -> tuple[list[str], list[str]]:
        """Kill every live sandbox process. Returns (killed ids, errors)."""
        killed: list[str] = []
        errors: list[str] = []
        for proc in await self._sandbox.list_processes():
            if proc.status not in LIVE_STATUSES:
                continue
            try:
                await proc.kill()
            except Exception as exc:
                errors.append(f"{proc.id}: {exc}")
                continue
            killed.append(proc.id)
        if killed or errors:
            logger.warning("Killed sandbox processes", killed=len(killed), errors=len(errors))
        return killed, errors
