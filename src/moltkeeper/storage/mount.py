"""Memoized mount of the remote bucket inside the sandbox.

Once a mount is confirmed, ``ensure_mounted`` returns without spawning
anything. The confirmation lives in an injectable ``MountState`` so each
warm instance (and each test) owns its own flag.

Concurrent callers in the same instance may both take the slow path and
both query the mount table. That is harmless (s3fs mounts are idempotent
at the backend) and is not serialized.
"""

from __future__ import annotations

from dataclasses import dataclass

from moltkeeper.config import StorageConfig
from moltkeeper.logger import logger
from moltkeeper.sandbox import Sandbox, SandboxError
from moltkeeper.types import StorageCredentials


@dataclass
class MountState:
    """Process-wide mount confirmation. Only MountManager writes it."""

    confirmed: bool = False

    def reset(self) -> None:
        """Forget the confirmation (test and debug hook)."""
        self.confirmed = False


class MountManager:
    def __init__(
        self,
        sandbox: Sandbox,
        config: StorageConfig,
        state: MountState | None = None,
    ) -> None:
        self._sandbox = sandbox
        self._config = config
        self.state = state if state is not None else MountState()

    @property
    def mount_path(self) -> str:
        return self._config.mount_path

    async def is_mounted(self) -> bool:
        """Check the container's mount table for our s3fs mount."""
        try:
            result = await self._sandbox.exec(
                f'mount | grep "s3fs on {self.mount_path}"',
                timeout=self._config.mount_check_timeout_seconds,
            )
        except SandboxError as exc:
            logger.debug("Mount table check failed", err=str(exc))
            return False
        mounted = "s3fs" in result.stdout
        logger.debug("Mount table check", mounted=mounted, stdout=result.stdout[:100])
        return mounted

    async def ensure_mounted(self, credentials: StorageCredentials) -> bool:
        """Make sure the bucket is mounted. Never raises.

        Returns False when credentials are incomplete (storage disabled) or
        the mount could not be established; the agent still runs without
        persistence in both cases.
        """
        if self.state.confirmed:
            return True

        access_key_id = credentials.access_key_id
        secret_access_key = credentials.secret_access_key
        if not (credentials.is_complete and access_key_id and secret_access_key):
            logger.info("Remote storage not configured", missing=credentials.missing())
            return False

        if await self.is_mounted():
            logger.info("Bucket already mounted", mount_path=self.mount_path)
            self.state.confirmed = True
            return True

        bucket = self._config.bucket_name
        try:
            logger.info("Mounting bucket", bucket=bucket, mount_path=self.mount_path)
            await self._sandbox.mount_bucket(
                bucket,
                self.mount_path,
                endpoint=credentials.endpoint,
                access_key_id=access_key_id,
                secret_access_key=secret_access_key,
                timeout=self._config.mount_timeout_seconds,
            )
        except Exception as exc:
            logger.warning("Bucket mount reported an error", bucket=bucket, err=str(exc))
            # The error can be spurious: the mount may exist anyway
            if await self.is_mounted():
                logger.info("Bucket is mounted despite the error", mount_path=self.mount_path)
                self.state.confirmed = True
                return True
            logger.error("Failed to mount bucket, continuing without persistence")
            return False

        logger.info("Bucket mounted", bucket=bucket, mount_path=self.mount_path)
        self.state.confirmed = True
        return True

    async def read_last_sync(self) -> str | None:
        """Return the remote ``.last-sync`` marker, or None when absent."""
        try:
            result = await self._sandbox.exec(
                f'cat {self.mount_path}/.last-sync 2>/dev/null || echo ""',
                timeout=self._config.mount_check_timeout_seconds,
            )
        except SandboxError as exc:
            logger.debug("Could not read sync marker", err=str(exc))
            return None
        timestamp = result.stdout.strip()
        return timestamp or None
