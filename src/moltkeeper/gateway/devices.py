"""Device pairing through the ``openclaw devices`` CLI.

The CLI's output is not a versioned contract: ``--json`` output can be
preceded by log lines, and success is signalled by prose as often as by
exit code. All of that guesswork lives in ``OpenClawCli``; callers only
see the ``DeviceCli`` protocol, so a stricter CLI needs a new adapter and
no call-site changes.
"""

from __future__ import annotations

import json
import re
import shlex
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

from moltkeeper.config import GatewayConfig
from moltkeeper.logger import logger
from moltkeeper.sandbox import Sandbox

# Shell-interpolation boundary: anything else is rejected before a command is built
_DEVICE_ID_RE = re.compile(r"[\w-]+", re.ASCII)

_FILE_OP_TIMEOUT = 10.0
_MAX_PAIRING_FILES = 10

# Runs inside the sandbox; path and id arrive as argv, never spliced into code.
_EDIT_PAIRING_SCRIPT = """\
import json, sys
path, device_id = sys.argv[1], sys.argv[2]
try:
    with open(path) as fh:
        data = json.load(fh)
    modified = False
    if isinstance(data, dict):
        for key, value in list(data.items()):
            if isinstance(value, list):
                kept = [
                    d for d in value
                    if not (isinstance(d, dict) and device_id in (d.get("deviceId"), d.get("id")))
                ]
                if len(kept) < len(value):
                    data[key] = kept
                    modified = True
            elif isinstance(value, dict) and device_id in value:
                del value[device_id]
                modified = True
    if modified:
        with open(path, "w") as fh:
            json.dump(data, fh, indent=2)
        print("REMOVED")
    else:
        print("NOT_FOUND")
except Exception as e:
    print("ERROR: %s" % e)
"""


def is_valid_device_id(value: str) -> bool:
    return bool(_DEVICE_ID_RE.fullmatch(value))


def extract_json_object(text: str) -> str | None:
    """Return the first balanced ``{...}`` substring of ``text``.

    Braces inside JSON strings are ignored. Returns None if no opening brace
    leads to a balanced object.
    """
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for i in range(start, len(text)):
            ch = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
            elif ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return text[start : i + 1]
        start = text.find("{", start + 1)
    return None


@dataclass
class DeviceListing:
    data: dict[str, Any] | None
    raw: str = ""
    stderr: str = ""
    parse_error: str | None = None

    @property
    def pending(self) -> list[dict[str, Any]]:
        if self.data is None:
            return []
        return list(self.data.get("pending") or [])

    def to_response(self) -> dict[str, Any]:
        if self.data is not None:
            return self.data
        response: dict[str, Any] = {
            "pending": [],
            "paired": [],
            "raw": self.raw,
            "stderr": self.stderr,
        }
        if self.parse_error:
            response["parseError"] = self.parse_error
        return response


@dataclass
class ApprovalResult:
    request_id: str
    success: bool
    stdout: str = ""
    stderr: str = ""


RemovalOutcome = Literal["removed", "not_found", "error"]


@dataclass
class RemovalResult:
    outcome: RemovalOutcome
    message: str
    errors: list[str] = field(default_factory=list)


class DeviceCli(Protocol):
    async def list_devices(self) -> DeviceListing: ...

    async def approve_device(self, request_id: str) -> ApprovalResult: ...

    async def remove_device(self, device_id: str) -> RemovalResult: ...


class OpenClawCli:
    """DeviceCli backed by the current openclaw CLI and its text heuristics."""

    def __init__(self, sandbox: Sandbox, config: GatewayConfig) -> None:
        self._sandbox = sandbox
        self._config = config

    def _command(self, *args: str) -> str:
        # The CLI requires explicit --url/--token to reach the local gateway
        parts = [self._config.cli, "devices", *args, "--url", self._config.ws_url]
        token = self._config.token_value()
        if token:
            parts += ["--token", token]
        return " ".join(shlex.quote(p) for p in parts)

    async def list_devices(self) -> DeviceListing:
        result = await self._sandbox.exec(
            self._command("list", "--json"),
            timeout=self._config.cli_timeout_seconds,
        )
        blob = extract_json_object(result.stdout)
        if blob is None:
            logger.warning("No JSON in device list output", exit_code=result.exit_code)
            return DeviceListing(data=None, raw=result.stdout, stderr=result.stderr)
        try:
            data = json.loads(blob)
        except json.JSONDecodeError as exc:
            logger.warning("Unparseable device list output", err=str(exc))
            return DeviceListing(
                data=None,
                raw=result.stdout,
                stderr=result.stderr,
                parse_error="Failed to parse CLI output",
            )
        return DeviceListing(data=data, raw=result.stdout, stderr=result.stderr)

    async def approve_device(self, request_id: str) -> ApprovalResult:
        result = await self._sandbox.exec(
            self._command("approve", request_id),
            timeout=self._config.cli_timeout_seconds,
        )
        # Either signal counts: the CLI prints "Approved ..." but its exit
        # codes have not always been reliable.
        success = "approved" in result.stdout.lower() or result.exit_code == 0
        logger.info("Device approval", request_id=request_id, success=success)
        return ApprovalResult(
            request_id=request_id,
            success=success,
            stdout=result.stdout,
            stderr=result.stderr,
        )

    async def remove_device(self, device_id: str) -> RemovalResult:
        if not is_valid_device_id(device_id):
            raise ValueError(f"Invalid device id: {device_id!r}")

        result = await self._sandbox.exec(
            f"{self._command('remove', device_id)} 2>&1",
            timeout=self._config.cli_timeout_seconds,
        )
        if result.exit_code == 0 and "unknown command" not in result.stdout.lower():
            logger.info("Device removed via CLI", device_id=device_id)
            return RemovalResult(outcome="removed", message="Device removed via CLI")

        # Older CLIs have no `devices remove`: edit the pairing files directly
        return await self._remove_from_pairing_files(device_id)

    async def _remove_from_pairing_files(self, device_id: str) -> RemovalResult:
        # Search dirs may hold globs (/home/*/...), so they stay unquoted
        dirs = " ".join(self._config.pairing_search_dirs)
        found = await self._sandbox.exec(
            f"grep -rlF {shlex.quote(device_id)} {dirs} 2>/dev/null | head -{_MAX_PAIRING_FILES}",
            timeout=_FILE_OP_TIMEOUT,
        )
        files = [line.strip() for line in found.stdout.splitlines() if line.strip()]
        if not files:
            return RemovalResult(outcome="not_found", message="Device not found in pairing data")

        errors: list[str] = []
        for path in files:
            if not path.endswith(".json"):
                continue
            edit = await self._sandbox.exec(
                f"python3 -c {shlex.quote(_EDIT_PAIRING_SCRIPT)} "
                f"{shlex.quote(path)} {shlex.quote(device_id)}",
                timeout=_FILE_OP_TIMEOUT,
            )
            if "REMOVED" in edit.stdout:
                logger.info("Device removed from pairing file", device_id=device_id, path=path)
                return RemovalResult(outcome="removed", message="Device pairing data removed")
            if "ERROR" in edit.stdout:
                errors.append(f"{path}: {edit.stdout.strip()}")

        logger.warning("Could not remove device", device_id=device_id, errors=errors)
        return RemovalResult(
            outcome="error",
            message="Could not remove device from pairing data",
            errors=errors,
        )
