"""Host sandbox contract.

Everything the control plane does inside the agent's container goes
through this interface: one-shot commands (``exec``), long-lived processes
(``start_process``), process enumeration, and bucket mounts. Every call
takes an explicit timeout; the host enforces its own request ceiling and
an unbounded await would take the whole request down with it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from moltkeeper.types import ProcessStatus


class SandboxError(Exception):
    """A sandbox operation failed (spawn error, non-zero mount, etc.)."""


class SandboxTimeoutError(SandboxError):
    """A sandbox operation did not finish within its timeout."""


@dataclass
class ExecResult:
    """Captured result of a one-shot command."""

    exit_code: int
    stdout: str
    stderr: str


@dataclass
class ProcessLogs:
    stdout: str
    stderr: str


@runtime_checkable
class ManagedProcess(Protocol):
    """Handle to a process owned by the sandbox.

    Callers hold the reference only; status lives with the sandbox.
    """

    @property
    def id(self) -> str: ...

    @property
    def command(self) -> str: ...

    @property
    def status(self) -> ProcessStatus: ...

    @property
    def exit_code(self) -> int | None: ...

    async def kill(self) -> None: ...

    async def wait(self, timeout: float) -> int: ...

    async def wait_for_port(self, port: int, timeout: float) -> None: ...

    async def get_logs(self) -> ProcessLogs: ...


@runtime_checkable
class Sandbox(Protocol):
    async def exec(
        self,
        command: str,
        *,
        timeout: float,
        env: dict[str, str] | None = None,
    ) -> ExecResult: ...

    async def start_process(
        self,
        command: str,
        *,
        env: dict[str, str] | None = None,
    ) -> ManagedProcess: ...

    async def list_processes(self) -> list[ManagedProcess]: ...

    async def mount_bucket(
        self,
        bucket: str,
        mount_path: str,
        *,
        endpoint: str,
        access_key_id: str,
        secret_access_key: str,
        timeout: float,
    ) -> None: ...
