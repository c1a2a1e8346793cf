"""Tests for the local subprocess sandbox."""

from __future__ import annotations

import asyncio
import socket
import stat

import pytest

from moltkeeper.sandbox import LocalSandbox, SandboxError, SandboxTimeoutError


def _free_port() -> int:
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


class TestExec:
    @pytest.mark.asyncio
    async def test_captures_output_and_exit_code(self):
        result = await LocalSandbox().exec("echo out; echo err >&2; exit 3", timeout=10)
        assert result.exit_code == 3
        assert result.stdout == "out\n"
        assert result.stderr == "err\n"

    @pytest.mark.asyncio
    async def test_env_is_merged(self):
        result = await LocalSandbox().exec(
            'echo "$MK_TEST_VAR"', timeout=10, env={"MK_TEST_VAR": "v"}
        )
        assert result.stdout.strip() == "v"

    @pytest.mark.asyncio
    async def test_timeout_raises(self):
        with pytest.raises(SandboxTimeoutError):
            await LocalSandbox().exec("sleep 10", timeout=0.2)

    @pytest.mark.asyncio
    async def test_timeout_bounds_multi_line_scripts(self, tmp_path):
        """Children of the shell are killed too, so the call returns on time."""
        marker = tmp_path / "after-sleep"
        loop = asyncio.get_running_loop()
        started = loop.time()

        with pytest.raises(SandboxTimeoutError):
            await LocalSandbox().exec(f"sleep 6\ntouch {marker}", timeout=0.5)

        assert loop.time() - started < 4
        await asyncio.sleep(0.2)
        assert not marker.exists()


class TestProcesses:
    @pytest.mark.asyncio
    async def test_start_list_and_kill(self):
        sandbox = LocalSandbox()
        proc = await sandbox.start_process("sleep 30")

        assert proc.id.startswith("proc_")
        assert proc.status == "running"
        assert await sandbox.list_processes() == [proc]

        await proc.kill()

        assert proc.status == "killed"
        assert proc.exit_code is not None

    @pytest.mark.asyncio
    async def test_exited_process_and_logs(self):
        proc = await LocalSandbox().start_process("echo hello; echo oops >&2; exit 4")

        assert await proc.wait(timeout=10) == 4
        await asyncio.sleep(0.05)

        assert proc.status == "exited"
        logs = await proc.get_logs()
        assert "hello" in logs.stdout
        assert "oops" in logs.stderr

    @pytest.mark.asyncio
    async def test_wait_timeout(self):
        proc = await LocalSandbox().start_process("sleep 30")
        try:
            with pytest.raises(SandboxTimeoutError):
                await proc.wait(timeout=0.1)
        finally:
            await proc.kill()

    @pytest.mark.asyncio
    async def test_output_is_tail_truncated(self):
        sandbox = LocalSandbox(max_output_size=10)
        proc = await sandbox.start_process("printf 'abcdefghijklmnopqrstuvwxyz'")
        await proc.wait(timeout=10)
        await asyncio.sleep(0.1)
        assert (await proc.get_logs()).stdout == "qrstuvwxyz"


class TestRegistry:
    @pytest.mark.asyncio
    async def test_finished_processes_are_pruned(self):
        sandbox = LocalSandbox(finished_history=2)
        finished = []
        for _ in range(4):
            proc = await sandbox.start_process("exit 0")
            await proc.wait(timeout=10)
            finished.append(proc)

        live = await sandbox.start_process("sleep 30")
        try:
            listed = await sandbox.list_processes()
            assert listed == [finished[2], finished[3], live]
        finally:
            await live.kill()

    @pytest.mark.asyncio
    async def test_live_processes_are_never_pruned(self):
        sandbox = LocalSandbox(finished_history=0)
        procs = [await sandbox.start_process("sleep 30") for _ in range(3)]
        try:
            assert await sandbox.list_processes() == procs
        finally:
            for proc in procs:
                await proc.kill()


class TestWaitForPort:
    @pytest.mark.asyncio
    async def test_returns_once_port_accepts(self):
        port = _free_port()
        server = await asyncio.start_server(lambda r, w: w.close(), "127.0.0.1", port)
        proc = await LocalSandbox().start_process("sleep 30")
        try:
            await proc.wait_for_port(port, timeout=5)
        finally:
            server.close()
            await proc.kill()

    @pytest.mark.asyncio
    async def test_process_exit_is_an_error(self):
        proc = await LocalSandbox().start_process("exit 7")
        with pytest.raises(SandboxError, match="exited with code 7"):
            await proc.wait_for_port(_free_port(), timeout=5)

    @pytest.mark.asyncio
    async def test_deadline(self):
        proc = await LocalSandbox().start_process("sleep 30")
        try:
            with pytest.raises(SandboxTimeoutError):
                await proc.wait_for_port(_free_port(), timeout=0.1)
        finally:
            await proc.kill()


class TestMountBucket:
    @pytest.mark.asyncio
    async def test_passwd_file_is_private_and_failure_raises(self, tmp_path, monkeypatch):
        sandbox = LocalSandbox(credentials_dir=tmp_path)
        # Keep s3fs itself out of the test: an empty PATH makes the command fail
        monkeypatch.setenv("PATH", "")

        with pytest.raises(SandboxError):
            await sandbox.mount_bucket(
                "bucket",
                str(tmp_path / "mnt"),
                endpoint="https://acct.r2.cloudflarestorage.com",
                access_key_id="AKID",
                secret_access_key="SECRET",
                timeout=10,
            )

        passwd = tmp_path / ".passwd-s3fs-bucket"
        assert passwd.read_text() == "AKID:SECRET\n"
        assert stat.S_IMODE(passwd.stat().st_mode) == 0o600
