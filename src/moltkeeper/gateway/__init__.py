"""The supervised OpenClaw gateway: process lifecycle and device pairing."""

from moltkeeper.gateway.devices import DeviceCli, OpenClawCli
from moltkeeper.gateway.supervisor import GatewayStartError, ProcessSupervisor

__all__ = ["DeviceCli", "GatewayStartError", "OpenClawCli", "ProcessSupervisor"]
