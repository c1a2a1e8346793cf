"""Application wiring, startup sequence and shutdown."""

from __future__ import annotations

import asyncio
import os
import signal
from collections.abc import Callable

from aiohttp import web

from moltkeeper.auth import authorizer_from_config
from moltkeeper.config import Settings, get_settings
from moltkeeper.gateway import GatewayStartError, OpenClawCli, ProcessSupervisor
from moltkeeper.http_server import AdminDeps, start_http_server
from moltkeeper.logger import logger, set_level
from moltkeeper.sandbox import LocalSandbox, Sandbox
from moltkeeper.storage import MountManager, MountState, SyncEngine
from moltkeeper.tasks import BackgroundTasks
from moltkeeper.types import RestoreResult, StorageCredentials, SyncResult

_SHUTDOWN_DRAIN_SECONDS = 10.0
_FORCE_EXIT_SECONDS = 15.0


async def run_periodic_sync(
    sync: SyncEngine,
    credentials: Callable[[], StorageCredentials],
    interval: float,
) -> None:
    """Back up to the bucket every ``interval`` seconds until cancelled."""
    while True:
        await asyncio.sleep(interval)
        try:
            await sync.sync_to_remote(credentials())
        except Exception as exc:
            logger.error("Periodic sync error", err=str(exc))


class MoltkeeperApp:
    def __init__(self, settings: Settings | None = None, sandbox: Sandbox | None = None) -> None:
        self.settings = settings or get_settings()
        s = self.settings
        self.sandbox: Sandbox = sandbox or LocalSandbox()
        self.tasks = BackgroundTasks()
        self.mounts = MountManager(self.sandbox, s.storage, MountState())
        self.sync = SyncEngine(self.sandbox, self.mounts, s.storage, s.gateway)
        self.supervisor = ProcessSupervisor(
            self.sandbox, s.gateway, self.tasks, before_spawn=self._restore
        )
        self.devices = OpenClawCli(self.sandbox, s.gateway)
        self._http_runner: web.AppRunner | None = None
        self._stop = asyncio.Event()
        self._shutting_down = False

    def credentials(self) -> StorageCredentials:
        return self.settings.storage.credentials()

    def admin_deps(self) -> AdminDeps:
        return AdminDeps(
            supervisor=self.supervisor,
            sync=self.sync,
            mounts=self.mounts,
            devices=self.devices,
            authorizer=authorizer_from_config(self.settings.admin),
            credentials=self.credentials,
        )

    async def sync_once(self) -> SyncResult:
        return await self.sync.sync_to_remote(self.credentials())

    async def _restore(self) -> RestoreResult:
        return await self.sync.restore_from_remote(self.credentials())

    async def _startup(self) -> None:
        # Mount up front. The supervisor restores from the bucket before each spawn
        await self.mounts.ensure_mounted(self.credentials())
        try:
            await self.supervisor.ensure_running()
        except GatewayStartError as exc:
            # The admin API stays up so an operator can inspect and restart
            logger.error("Gateway did not start", err=str(exc))

    def _request_shutdown(self, sig_name: str) -> None:
        """Second signal force-exits."""
        if self._shutting_down:
            logger.info("Force shutdown")
            os._exit(1)
        self._shutting_down = True
        logger.info("Shutdown signal received", signal=sig_name)
        asyncio.get_running_loop().call_later(_FORCE_EXIT_SECONDS, lambda: os._exit(1))
        self._stop.set()

    async def run(self) -> None:
        """Run the service until SIGINT or SIGTERM."""
        s = self.settings
        set_level(s.logging.level)

        if s.admin.token is None and not s.admin.allow_unauthenticated:
            logger.warning("No admin token configured, admin API will reject all requests")

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda sig=sig: self._request_shutdown(sig.name))

        self._http_runner = await start_http_server(
            self.admin_deps(), s.server.host, s.server.port
        )
        await self._startup()

        periodic: asyncio.Task[None] | None = None
        interval = s.storage.sync_interval_seconds
        if interval > 0 and self.credentials().is_complete:
            periodic = self.tasks.spawn(
                run_periodic_sync(self.sync, self.credentials, interval),
                name="periodic-sync",
            )
            logger.info("Periodic sync enabled", interval_seconds=interval)

        await self._stop.wait()

        if periodic is not None:
            periodic.cancel()
        await self._http_runner.cleanup()
        await self.tasks.drain(_SHUTDOWN_DRAIN_SECONDS)
        logger.info("Shutdown complete")
