"""Shared test fixtures for moltkeeper."""

from __future__ import annotations

from collections.abc import Callable

import pytest

from moltkeeper.sandbox import ExecResult, ProcessLogs, SandboxError
from moltkeeper.types import StorageCredentials

# ---------------------------------------------------------------------------
# Shared helpers (plain functions, importable by test files)
# ---------------------------------------------------------------------------


def make_settings(**overrides):
    """Create a Settings object from pure defaults, ignoring config.toml and .env.

    Usage::

        s = make_settings()
        s = make_settings(gateway=GatewayConfig(restart_grace_seconds=0))
    """
    from moltkeeper.config import (
        AdminConfig,
        GatewayConfig,
        LoggingConfig,
        ServerConfig,
        Settings,
        StorageConfig,
    )

    defaults = {
        "server": ServerConfig(),
        "logging": LoggingConfig(),
        "storage": StorageConfig(),
        "gateway": GatewayConfig(),
        "admin": AdminConfig(),
    }
    defaults.update(overrides)
    return Settings.model_construct(**defaults)


def full_credentials() -> StorageCredentials:
    return StorageCredentials(
        access_key_id="AKID",
        secret_access_key="SECRET",
        account_id="acct123",
    )


def ok(stdout: str = "", stderr: str = "", exit_code: int = 0) -> ExecResult:
    return ExecResult(exit_code=exit_code, stdout=stdout, stderr=stderr)


class FakeProcess:
    """In-memory ManagedProcess."""

    def __init__(
        self,
        proc_id: str,
        command: str,
        status: str = "running",
        exit_code: int | None = None,
    ) -> None:
        self.id = proc_id
        self.command = command
        self.status = status
        self.exit_code = exit_code
        self.port_error: Exception | None = None
        self.kill_error: Exception | None = None
        self.kill_calls = 0
        self.port_waits: list[int] = []
        self.logs = ProcessLogs(stdout="", stderr="")

    async def kill(self) -> None:
        self.kill_calls += 1
        if self.kill_error is not None:
            raise self.kill_error
        self.status = "killed"

    async def wait(self, timeout: float) -> int:
        return self.exit_code or 0

    async def wait_for_port(self, port: int, timeout: float) -> None:
        self.port_waits.append(port)
        if self.port_error is not None:
            raise self.port_error

    async def get_logs(self) -> ProcessLogs:
        return self.logs


class FakeSandbox:
    """Scripted Sandbox that records every call.

    ``exec`` answers from ``responder`` when set, otherwise pops queued
    ``results`` (an Exception in the queue is raised), otherwise returns an
    empty success.
    """

    def __init__(self) -> None:
        self.exec_calls: list[str] = []
        self.results: list[ExecResult | Exception] = []
        self.responder: Callable[[str], ExecResult] | None = None
        self.mount_calls: list[dict] = []
        self.mount_error: Exception | None = None
        self.processes: list[FakeProcess] = []
        self.started: list[FakeProcess] = []
        self.next_port_error: Exception | None = None

    async def exec(self, command: str, *, timeout: float, env=None) -> ExecResult:
        self.exec_calls.append(command)
        if self.responder is not None:
            return self.responder(command)
        if self.results:
            item = self.results.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        return ok()

    async def start_process(self, command: str, *, env=None) -> FakeProcess:
        proc = FakeProcess(f"proc_{len(self.started) + 1}", command)
        proc.port_error = self.next_port_error
        self.started.append(proc)
        self.processes.append(proc)
        return proc

    async def list_processes(self) -> list[FakeProcess]:
        return list(self.processes)

    async def mount_bucket(self, bucket, mount_path, **kwargs) -> None:
        self.mount_calls.append({"bucket": bucket, "mount_path": mount_path, **kwargs})
        if self.mount_error is not None:
            raise self.mount_error


def mount_error(message: str = "mount failed") -> SandboxError:
    return SandboxError(message)


# ---------------------------------------------------------------------------
# Autouse fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def reset_settings(monkeypatch):
    """Each test starts from a defaults-only Settings singleton."""
    monkeypatch.setattr("moltkeeper.config._settings", make_settings())


# ---------------------------------------------------------------------------
# Reusable fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def sandbox() -> FakeSandbox:
    return FakeSandbox()


@pytest.fixture
def settings():
    return make_settings()
