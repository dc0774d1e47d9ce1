"""
Cleanup Sweeper - Retire expired and failed sandboxes.

This module handles:
- Selecting RUNNING sandboxes older than the TTL
- Selecting ERROR sandboxes that sat past the grace period
- Claiming each one (compare-and-set to STOPPED) before tearing it down
- Reclaiming labelled containers whose sandbox is gone or stopped
- Pruning dangling images
"""

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Optional

from preview_sandbox.schemas import Sandbox, SandboxStatus, SandboxType, utcnow
from preview_sandbox.sandbox.errors import RuntimeUnavailable
from preview_sandbox.sandbox.ports import PortAllocator
from preview_sandbox.sandbox.registry import SandboxRegistry
from preview_sandbox.sandbox.runtime import ContainerRuntimeAdapter
from preview_sandbox.utils import KeyedLock

logger = logging.getLogger(__name__)

Teardown = Callable[[Sandbox], Awaitable[bool]]


class CleanupSweeper:
    """
    Periodic retirement of sandboxes.

    Args:
        registry: Sandbox records
        runtime: Container engine adapter
        ports: Port pool to return ports to
        locks: Per-sandbox locks shared with the orchestrator
        ttl_seconds: Age after which a RUNNING sandbox is retired
        error_grace_seconds: Time an ERROR sandbox is kept for inspection
        interval: Seconds between background sweeps
        delete_records: Delete retired records instead of keeping them as STOPPED
        teardown: Releases a sandbox's runtime resources, returns True when
            nothing is left behind. Defaults to removing its container.
    """

    def __init__(
        self,
        registry: SandboxRegistry,
        runtime: ContainerRuntimeAdapter,
        ports: PortAllocator,
        locks: Optional[KeyedLock] = None,
        ttl_seconds: float = 2 * 60 * 60,
        error_grace_seconds: float = 15 * 60,
        interval: float = 300,
        delete_records: bool = False,
        teardown: Optional[Teardown] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.registry = registry
        self.runtime = runtime
        self.ports = ports
        self.locks = locks or KeyedLock()
        self.ttl_seconds = ttl_seconds
        self.error_grace_seconds = error_grace_seconds
        self.interval = interval
        self.delete_records = delete_records
        self.teardown = teardown or self._remove_container
        self.clock = clock
        self._task: Optional[asyncio.Task] = None

    # -------------------------------------------------------------------------
    # Background task
    # -------------------------------------------------------------------------

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._run(), name="sandbox-cleanup")
        logger.info("Cleanup sweeper started (interval %ss, TTL %ss)", self.interval, self.ttl_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.sweep()
            except Exception:
                logger.exception("Cleanup sweep failed")

    # -------------------------------------------------------------------------
    # Sweep
    # -------------------------------------------------------------------------

    def is_expired(self, record: Sandbox, now: datetime) -> bool:
        """Check whether a sandbox is due for retirement."""
        if record.status == SandboxStatus.RUNNING:
            return record.age_seconds(now) > self.ttl_seconds
        if record.status == SandboxStatus.ERROR:
            return record.idle_seconds(now) > self.error_grace_seconds
        return False

    async def sweep(self, now: Optional[datetime] = None) -> int:
        """
        Run one sweep.

        Args:
            now: Reference time (defaults to the clock)

        Returns:
            Number of sandboxes retired
        """
        now = now or self.clock()
        retired = 0

        for record in await self.registry.list_all():
            if not self.is_expired(record, now):
                continue
            try:
                if await self._retire(record, now):
                    retired += 1
            except Exception:
                logger.exception("Failed to retire sandbox %s, skipping", record.id)

        reclaimed = await self.reclaim_orphans()

        if retired or reclaimed:
            await self.runtime.prune_images()
            logger.info("Cleanup retired %d sandbox(es), reclaimed %d orphan(s)", retired, reclaimed)
        return retired

    async def _retire(self, record: Sandbox, now: datetime) -> bool:
        if record.status == SandboxStatus.RUNNING:
            reason = f"Expired after {int(record.age_seconds(now) // 60)} minutes"
        else:
            reason = "Removed after error grace period"

        async with self.locks(record.id):
            claimed = await self.registry.update(
                record.id,
                expected_status=record.status,
                status=SandboxStatus.STOPPED,
                append_logs=[reason],
            )
            if claimed is None:
                logger.debug("Sandbox %s changed before it could be retired", record.id)
                return False

            logger.info("Retiring sandbox %s: %s", record.id, reason)
            try:
                clean = await self.teardown(claimed)
            except Exception:
                logger.exception("Teardown of sandbox %s failed, leaving it to the orphan pass", record.id)
                clean = False
            self.ports.release(claimed.port)

            if self.delete_records:
                await self.registry.delete(record.id)
            elif clean:
                await self.registry.update(record.id, runtime_id=None)
        return True

    async def _remove_container(self, record: Sandbox) -> bool:
        if record.type != SandboxType.DOCKER or not record.runtime_id:
            return True
        try:
            await self.runtime.stop(record.runtime_id)
            await self.runtime.remove(record.runtime_id, record.id)
        except RuntimeUnavailable as e:
            logger.warning("Could not remove runtime of %s, leaving it to the orphan pass: %s", record.id, e)
            return False
        return True

    async def reclaim_orphans(self) -> int:
        """
        Remove managed containers whose sandbox is unknown or STOPPED.

        Returns:
            Number of containers removed
        """
        try:
            containers = await self.runtime.list_managed()
        except RuntimeUnavailable as e:
            logger.debug("Skipping orphan reclamation: %s", e)
            return 0

        reclaimed = 0
        for container in containers:
            sandbox_id = container.sandbox_id or container.name
            async with self.locks(sandbox_id):
                record = await self.registry.get(sandbox_id)
                if record is not None and record.status != SandboxStatus.STOPPED:
                    continue
                try:
                    await self.runtime.remove(container.runtime_id, container.sandbox_id)
                except RuntimeUnavailable as e:
                    logger.warning("Could not reclaim container %s: %s", container.name, e)
                    continue
                if record is not None and record.runtime_id == container.runtime_id:
                    await self.registry.update(sandbox_id, runtime_id=None)

            reclaimed += 1
            logger.info("Reclaimed orphaned container %s (sandbox %s)", container.name, sandbox_id)
        return reclaimed
