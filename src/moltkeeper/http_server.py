"""Admin HTTP API for the gateway, device pairing and storage.

Routes under ``/api/admin`` pass the authorization middleware first;
``/health`` is public. Subsystems return structured results which the
handlers map to HTTP status; anything unexpected becomes a 500 with the
exception message, never a traceback.
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from aiohttp import web

from moltkeeper.auth import Authorizer
from moltkeeper.gateway.devices import DeviceCli, is_valid_device_id
from moltkeeper.gateway.supervisor import ProcessSupervisor, describe_process
from moltkeeper.logger import logger
from moltkeeper.storage.mount import MountManager
from moltkeeper.storage.sync import SyncEngine
from moltkeeper.types import StorageCredentials

ADMIN_PREFIX = "/api/admin"

_start_time = time.monotonic()

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


@dataclass
class AdminDeps:
    """Dependencies injected by app.py."""

    supervisor: ProcessSupervisor
    sync: SyncEngine
    mounts: MountManager
    devices: DeviceCli
    authorizer: Authorizer
    credentials: Callable[[], StorageCredentials]


deps_key = web.AppKey("deps", AdminDeps)


# ------------------------------------------------------------------
# Middleware
# ------------------------------------------------------------------


@web.middleware
async def _error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except Exception as exc:
        logger.exception("Request failed", method=request.method, path=request.path)
        return web.json_response({"error": str(exc) or type(exc).__name__}, status=500)


@web.middleware
async def _admin_auth_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    if request.path.startswith(ADMIN_PREFIX):
        deps = request.app[deps_key]
        if not await deps.authorizer.authorize(request):
            logger.warning("Unauthorized admin request", path=request.path)
            return web.json_response({"error": "Unauthorized"}, status=401)
    return await handler(request)


# ------------------------------------------------------------------
# Public endpoints
# ------------------------------------------------------------------


async def _handle_health(request: web.Request) -> web.Response:
    deps = request.app[deps_key]
    gateway = await deps.supervisor.find_existing()
    return web.json_response(
        {
            "status": "ok",
            "uptime_seconds": round(time.monotonic() - _start_time),
            "gateway": {
                "running": gateway is not None,
                "processId": gateway.id if gateway else None,
            },
        }
    )


# ------------------------------------------------------------------
# Devices
# ------------------------------------------------------------------


async def _handle_list_devices(request: web.Request) -> web.Response:
    deps = request.app[deps_key]
    await deps.supervisor.ensure_running()
    listing = await deps.devices.list_devices()
    return web.json_response(listing.to_response())


async def _handle_approve_device(request: web.Request) -> web.Response:
    deps = request.app[deps_key]
    request_id = request.match_info.get("requestId", "")
    if not request_id:
        return web.json_response({"error": "requestId is required"}, status=400)

    await deps.supervisor.ensure_running()
    result = await deps.devices.approve_device(request_id)
    return web.json_response(
        {
            "success": result.success,
            "requestId": request_id,
            "message": "Device approved" if result.success else "Approval may have failed",
            "stdout": result.stdout,
            "stderr": result.stderr,
        }
    )


async def _handle_approve_all(request: web.Request) -> web.Response:
    deps = request.app[deps_key]
    await deps.supervisor.ensure_running()

    listing = await deps.devices.list_devices()
    if listing.parse_error:
        return web.json_response(
            {"error": "Failed to parse device list", "raw": listing.raw},
            status=500,
        )

    pending = listing.pending
    if not pending:
        return web.json_response(
            {"approved": [], "failed": [], "message": "No pending devices to approve"}
        )

    approved: list[str] = []
    failed: list[dict[str, Any]] = []
    # Sequential: approvals write to the same pairing store
    for device in pending:
        request_id = str(device.get("requestId", ""))
        if not request_id:
            failed.append({"requestId": request_id, "success": False, "error": "missing requestId"})
            continue
        try:
            result = await deps.devices.approve_device(request_id)
        except Exception as exc:
            failed.append({"requestId": request_id, "success": False, "error": str(exc)})
            continue
        if result.success:
            approved.append(request_id)
        else:
            failed.append({"requestId": request_id, "success": False})

    return web.json_response(
        {
            "approved": approved,
            "failed": failed,
            "message": f"Approved {len(approved)} of {len(pending)} device(s)",
        }
    )


async def _handle_remove_device(request: web.Request) -> web.Response:
    deps = request.app[deps_key]
    device_id = request.match_info.get("deviceId", "")
    if not device_id:
        return web.json_response({"error": "deviceId is required"}, status=400)
    # Checked before anything reaches a shell
    if not is_valid_device_id(device_id):
        return web.json_response({"error": "Invalid deviceId format"}, status=400)

    await deps.supervisor.ensure_running()
    result = await deps.devices.remove_device(device_id)

    if result.outcome == "removed":
        return web.json_response(
            {"success": True, "deviceId": device_id, "message": result.message}
        )
    if result.outcome == "not_found":
        return web.json_response(
            {"success": False, "deviceId": device_id, "error": result.message},
            status=404,
        )
    return web.json_response(
        {
            "success": False,
            "deviceId": device_id,
            "error": result.message,
            "details": result.errors,
        },
        status=500,
    )


# ------------------------------------------------------------------
# Storage
# ------------------------------------------------------------------


async def _handle_storage_status(request: web.Request) -> web.Response:
    deps = request.app[deps_key]
    credentials = deps.credentials()
    missing = credentials.missing()

    last_sync: str | None = None
    if credentials.is_complete and await deps.mounts.ensure_mounted(credentials):
        last_sync = await deps.mounts.read_last_sync()

    body: dict[str, Any] = {
        "configured": credentials.is_complete,
        "lastSync": last_sync,
        "message": (
            "Storage is configured. Your data will persist across container restarts."
            if credentials.is_complete
            else "Storage is not configured. Paired devices and conversations will be "
            "lost when the container restarts."
        ),
    }
    if missing:
        body["missing"] = missing
    return web.json_response(body)


async def _handle_storage_sync(request: web.Request) -> web.Response:
    deps = request.app[deps_key]
    result = await deps.sync.sync_to_remote(deps.credentials())

    if result.success:
        return web.json_response(
            {
                "success": True,
                "message": "Sync completed successfully",
                "lastSync": result.last_sync,
            }
        )
    status = 400 if result.error and "not configured" in result.error else 500
    return web.json_response(result.to_dict(), status=status)


# ------------------------------------------------------------------
# Gateway & processes
# ------------------------------------------------------------------


async def _handle_gateway_restart(request: web.Request) -> web.Response:
    deps = request.app[deps_key]
    previous = await deps.supervisor.restart()

    body: dict[str, Any] = {
        "success": True,
        "message": (
            "Gateway process killed, new instance starting..."
            if previous
            else "No existing process found, starting new instance..."
        ),
    }
    if previous is not None:
        body["previousProcessId"] = previous.id
    return web.json_response(body)


async def _handle_list_processes(request: web.Request) -> web.Response:
    deps = request.app[deps_key]
    processes = await deps.supervisor.list_processes()
    return web.json_response(
        {
            "total": len(processes),
            "processes": [describe_process(p) for p in processes],
        }
    )


async def _handle_kill_all_processes(request: web.Request) -> web.Response:
    deps = request.app[deps_key]
    killed, errors = await deps.supervisor.kill_all()
    return web.json_response({"killed": len(killed), "killedIds": killed, "errors": errors})


# ------------------------------------------------------------------
# Server setup
# ------------------------------------------------------------------


def create_app(deps: AdminDeps) -> web.Application:
    app = web.Application(middlewares=[_error_middleware, _admin_auth_middleware])
    app[deps_key] = deps
    app.router.add_get("/health", _handle_health)

    p = ADMIN_PREFIX
    app.router.add_get(f"{p}/devices", _handle_list_devices)
    app.router.add_post(f"{p}/devices/approve-all", _handle_approve_all)
    app.router.add_post(f"{p}/devices/{{requestId}}/approve", _handle_approve_device)
    app.router.add_delete(f"{p}/devices/{{deviceId}}", _handle_remove_device)
    app.router.add_get(f"{p}/storage", _handle_storage_status)
    app.router.add_post(f"{p}/storage/sync", _handle_storage_sync)
    app.router.add_post(f"{p}/gateway/restart", _handle_gateway_restart)
    app.router.add_get(f"{p}/processes", _handle_list_processes)
    app.router.add_delete(f"{p}/processes/all", _handle_kill_all_processes)
    return app


async def start_http_server(deps: AdminDeps, host: str, port: int) -> web.AppRunner:
    """Create, start, and return the HTTP server runner."""
    runner = web.AppRunner(create_app(deps))
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info("HTTP server listening", host=host, port=port)
    return runner
