"""Durable storage: bucket mount and sync."""

from moltkeeper.storage.mount import MountManager, MountState
from moltkeeper.storage.sync import SyncEngine

__all__ = ["MountManager", "MountState", "SyncEngine"]
