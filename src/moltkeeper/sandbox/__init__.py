"""Host sandbox abstraction and its local implementation."""

from moltkeeper.sandbox.base import (
    ExecResult,
    ManagedProcess,
    ProcessLogs,
    Sandbox,
    SandboxError,
    SandboxTimeoutError,
)
from moltkeeper.sandbox.local import LocalProcess, LocalSandbox

__all__ = [
    "ExecResult",
    "LocalProcess",
    "LocalSandbox",
    "ManagedProcess",
    "ProcessLogs",
    "Sandbox",
    "SandboxError",
    "SandboxTimeoutError",
]
