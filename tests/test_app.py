"""Tests for application wiring and the periodic sync loop."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, Mock

import pytest
from conftest import FakeSandbox, full_credentials, make_settings, ok

from moltkeeper.app import MoltkeeperApp, run_periodic_sync
from moltkeeper.auth import DenyAllAuthorizer
from moltkeeper.config import StorageConfig
from moltkeeper.sandbox import SandboxTimeoutError
from moltkeeper.types import SyncResult


class TestPeriodicSync:
    @pytest.mark.asyncio
    async def test_runs_every_interval_and_survives_errors(self):
        sync = Mock()
        sync.sync_to_remote = AsyncMock(
            side_effect=[RuntimeError("boom"), SyncResult(success=True, last_sync="x")] * 50
        )

        task = asyncio.create_task(run_periodic_sync(sync, full_credentials, 0.01))
        await asyncio.sleep(0.1)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert sync.sync_to_remote.await_count >= 2


class TestMoltkeeperApp:
    def test_wires_subsystems_on_one_sandbox(self):
        sandbox = FakeSandbox()
        app = MoltkeeperApp(make_settings(), sandbox=sandbox)

        deps = app.admin_deps()

        assert deps.supervisor is app.supervisor
        assert deps.sync is app.sync
        assert isinstance(deps.authorizer, DenyAllAuthorizer)
        assert deps.credentials().is_complete is False

    @pytest.mark.asyncio
    async def test_sync_once_without_credentials(self):
        app = MoltkeeperApp(make_settings(), sandbox=FakeSandbox())
        result = await app.sync_once()
        assert result.error == "Storage is not configured"

    @pytest.mark.asyncio
    async def test_startup_mounts_before_starting_gateway(self):
        sandbox = FakeSandbox()
        sandbox.results = [
            ok("s3fs on /data/moltbot type fuse.s3fs\n"),
        ]
        storage = StorageConfig(access_key_id="AKID", secret_access_key="SECRET", account_id="a")
        app = MoltkeeperApp(make_settings(storage=storage), sandbox=sandbox)

        await app._startup()

        assert "s3fs on /data/moltbot" in sandbox.exec_calls[0]
        assert app.mounts.state.confirmed is True
        # The restore script ran on the mounted bucket before the spawn
        assert len(sandbox.exec_calls) == 2
        assert "/data/moltbot/.last-sync" in sandbox.exec_calls[1]
        assert len(sandbox.started) == 1

    @pytest.mark.asyncio
    async def test_startup_survives_gateway_failure(self):
        sandbox = FakeSandbox()
        sandbox.next_port_error = SandboxTimeoutError("never listened")
        app = MoltkeeperApp(make_settings(), sandbox=sandbox)

        await app._startup()

        assert sandbox.started[0].status == "killed"

    @pytest.mark.asyncio
    async def test_startup_without_storage_skips_restore(self):
        sandbox = FakeSandbox()
        app = MoltkeeperApp(make_settings(), sandbox=sandbox)

        await app._startup()

        assert sandbox.exec_calls == []
        assert len(sandbox.started) == 1
