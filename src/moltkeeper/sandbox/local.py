"""Sandbox implementation backed by local asyncio subprocesses.

The control plane runs inside the same container as the agent, so the
"sandbox" is the local machine: shell commands via ``/bin/sh``, long-lived
processes tracked in an in-memory registry, and bucket mounts via s3fs.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import shlex
import signal
import time
import uuid
from asyncio.subprocess import PIPE
from pathlib import Path

from moltkeeper.logger import logger
from moltkeeper.sandbox.base import (
    ExecResult,
    ProcessLogs,
    SandboxError,
    SandboxTimeoutError,
)
from moltkeeper.types import LIVE_STATUSES, ProcessStatus

_DEFAULT_MAX_OUTPUT = 1_048_576  # 1MB per stream
_DEFAULT_FINISHED_HISTORY = 10
_KILL_GRACE_SECONDS = 5.0
_DRAIN_SECONDS = 2.0
_PORT_POLL_INTERVAL = 0.5


def _signal_group(pid: int, sig: signal.Signals) -> None:
    """Signal the whole process group (every spawn gets its own session)."""
    with contextlib.suppress(ProcessLookupError, PermissionError):
        os.killpg(pid, sig)


def _merged_env(env: dict[str, str] | None) -> dict[str, str] | None:
    if env is None:
        return None
    return {**os.environ, **env}


class LocalProcess:
    """A long-lived subprocess with captured (tail-truncated) output."""

    def __init__(
        self,
        proc_id: str,
        command: str,
        proc: asyncio.subprocess.Process,
        max_output_size: int,
    ) -> None:
        self._id = proc_id
        self._command = command
        self._proc = proc
        self._max_output_size = max_output_size
        self._killed = False
        self._stdout = ""
        self._stderr = ""
        if proc.stdout is None or proc.stderr is None:
            raise SandboxError(f"Process {proc_id} was started without output pipes")
        self._readers = [
            asyncio.ensure_future(self._pump(proc.stdout, "stdout")),
            asyncio.ensure_future(self._pump(proc.stderr, "stderr")),
        ]

    @property
    def id(self) -> str:
        return self._id

    @property
    def command(self) -> str:
        return self._command

    @property
    def status(self) -> ProcessStatus:
        if self._proc.returncode is None:
            return "running"
        return "killed" if self._killed else "exited"

    @property
    def exit_code(self) -> int | None:
        return self._proc.returncode

    async def _pump(self, stream: asyncio.StreamReader, name: str) -> None:
        while True:
            chunk = await stream.read(8192)
            if not chunk:
                break
            text = chunk.decode(errors="replace")
            for line in text.strip().splitlines():
                if line:
                    logger.debug(line, process=self._id, stream=name)
            if name == "stdout":
                self._stdout = (self._stdout + text)[-self._max_output_size :]
            else:
                self._stderr = (self._stderr + text)[-self._max_output_size :]

    async def kill(self) -> None:
        """Terminate, then force-kill if the process ignores SIGTERM."""
        if self._proc.returncode is not None:
            return
        self._killed = True
        _signal_group(self._proc.pid, signal.SIGTERM)
        try:
            await asyncio.wait_for(self._proc.wait(), timeout=_KILL_GRACE_SECONDS)
        except TimeoutError:
            logger.warning("Process ignored SIGTERM, force killing", process=self._id)
            _signal_group(self._proc.pid, signal.SIGKILL)
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._proc.wait(), timeout=_DRAIN_SECONDS)

    async def wait(self, timeout: float) -> int:
        try:
            return await asyncio.wait_for(self._proc.wait(), timeout=timeout)
        except TimeoutError as exc:
            raise SandboxTimeoutError(
                f"Process {self._id} still running after {timeout:.0f}s"
            ) from exc

    async def wait_for_port(self, port: int, timeout: float) -> None:
        """Poll until ``port`` accepts TCP connections on localhost."""
        deadline = time.monotonic() + timeout
        while True:
            if self._proc.returncode is not None:
                raise SandboxError(
                    f"Process {self._id} exited with code {self._proc.returncode} "
                    f"before port {port} opened"
                )
            try:
                _, writer = await asyncio.wait_for(
                    asyncio.open_connection("127.0.0.1", port), timeout=1.0
                )
            except (OSError, TimeoutError):
                if time.monotonic() >= deadline:
                    raise SandboxTimeoutError(
                        f"Port {port} not open after {timeout:.0f}s"
                    ) from None
                await asyncio.sleep(_PORT_POLL_INTERVAL)
                continue
            writer.close()
            with contextlib.suppress(Exception):
                await writer.wait_closed()
            return

    async def get_logs(self) -> ProcessLogs:
        return ProcessLogs(stdout=self._stdout, stderr=self._stderr)


class LocalSandbox:
    """Runs sandbox operations on the local machine."""

    def __init__(
        self,
        *,
        max_output_size: int = _DEFAULT_MAX_OUTPUT,
        credentials_dir: Path | None = None,
        finished_history: int = _DEFAULT_FINISHED_HISTORY,
    ) -> None:
        self._max_output_size = max_output_size
        self._credentials_dir = credentials_dir or Path.home()
        self._finished_history = finished_history
        self._processes: dict[str, LocalProcess] = {}

    async def exec(
        self,
        command: str,
        *,
        timeout: float,
        env: dict[str, str] | None = None,
    ) -> ExecResult:
        """Run a shell command to completion.

        Raises SandboxTimeoutError when ``timeout`` elapses, after killing
        the shell and everything it started. Raises SandboxError when the
        shell cannot be spawned.
        """
        try:
            process = await asyncio.create_subprocess_shell(
                command,
                stdout=PIPE,
                stderr=PIPE,
                env=_merged_env(env),
                start_new_session=True,  # own process group, so children die with it
            )
        except OSError as exc:
            raise SandboxError(f"Failed to start command: {exc}") from exc

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except TimeoutError as exc:
            _signal_group(process.pid, signal.SIGKILL)
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(process.wait(), timeout=_DRAIN_SECONDS)
            raise SandboxTimeoutError(f"Command timed out after {timeout:.0f}s") from exc

        return ExecResult(
            exit_code=process.returncode if process.returncode is not None else -1,
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
        )

    async def start_process(
        self,
        command: str,
        *,
        env: dict[str, str] | None = None,
    ) -> LocalProcess:
        try:
            proc = await asyncio.create_subprocess_shell(
                command,
                stdout=PIPE,
                stderr=PIPE,
                env=_merged_env(env),
                start_new_session=True,
            )
        except OSError as exc:
            raise SandboxError(f"Failed to start process: {exc}") from exc

        proc_id = f"proc_{uuid.uuid4().hex[:12]}"
        managed = LocalProcess(proc_id, command, proc, self._max_output_size)
        self._processes[proc_id] = managed
        self._prune_finished()
        logger.info("Process started", process=proc_id, pid=proc.pid)
        return managed

    def _prune_finished(self) -> None:
        """Keep live processes and only the most recent finished ones."""
        finished = [
            proc_id
            for proc_id, proc in self._processes.items()
            if proc.status not in LIVE_STATUSES
        ]
        excess = len(finished) - self._finished_history
        for proc_id in finished[: max(excess, 0)]:
            del self._processes[proc_id]

    async def list_processes(self) -> list[LocalProcess]:
        return list(self._processes.values())

    async def mount_bucket(
        self,
        bucket: str,
        mount_path: str,
        *,
        endpoint: str,
        access_key_id: str,
        secret_access_key: str,
        timeout: float,
    ) -> None:
        """Mount ``bucket`` at ``mount_path`` with s3fs.

        Credentials go through an s3fs passwd file (mode 0600) so they never
        appear on a command line.
        """
        passwd_file = self._credentials_dir / f".passwd-s3fs-{bucket}"
        passwd_file.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(passwd_file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as fh:
            fh.write(f"{access_key_id}:{secret_access_key}\n")

        command = (
            f"mkdir -p {shlex.quote(mount_path)} && "
            f"s3fs {shlex.quote(bucket)} {shlex.quote(mount_path)} "
            f"-o passwd_file={shlex.quote(str(passwd_file))} "
            f"-o url={shlex.quote(endpoint)} "
            "-o use_path_request_style"
        )
        result = await self.exec(command, timeout=timeout)
        if result.exit_code != 0:
            raise SandboxError(
                (result.stderr or result.stdout).strip() or f"s3fs exited {result.exit_code}"
            )
