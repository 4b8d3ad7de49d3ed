"""
Sweep Coordinator - Bulk reclamation of expired or selected instances

Items are processed one at a time and independently: a failed teardown is
counted and the sweep moves on. An instance is only marked destroyed once
its workload is actually gone, so failures are retried on the next sweep.
"""

import asyncio
from typing import Iterable, List, Optional

import structlog

from instancer.domain.instances import Instance, SweepReport

from .instance_manager import InstanceManager

logger = structlog.get_logger(__name__)


class SweepCoordinator:
    """Expired-instance cleanup and admin batch destroy."""

    def __init__(
        self,
        manager: InstanceManager,
        interval_seconds: float = 60,
        sweep_timeout: Optional[float] = None,
    ):
        self.manager = manager
        self.interval_seconds = interval_seconds
        self.sweep_timeout = sweep_timeout or manager.config.sweep_timeout

        self._task: Optional[asyncio.Task] = None
        self._running = False

    async def clean_expired(self, actor_id: Optional[int] = None) -> SweepReport:
        expired = await self.manager.instances.list_expired(self.manager.clock())
        if expired:
            logger.info("Sweeping expired instances", count=len(expired))
        return await self._sweep(expired, actor_id=actor_id, reason="expired")

    async def batch_destroy(
        self,
        instance_ids: Iterable[int],
        actor_id: Optional[int] = None,
    ) -> SweepReport:
        """Destroy the given instances. Ids that are not running are skipped."""
        targets: List[Instance] = []
        skipped = 0
        seen = set()
        for instance_id in instance_ids:
            if instance_id in seen:
                continue
            seen.add(instance_id)
            instance = await self.manager.instances.get_running_by_id(instance_id)
            if instance is None:
                skipped += 1
                continue
            targets.append(instance)

        report = await self._sweep(targets, actor_id=actor_id, reason="admin")
        report.skipped += skipped
        return report

    async def _sweep(
        self,
        instances: List[Instance],
        actor_id: Optional[int],
        reason: str,
    ) -> SweepReport:
        report = SweepReport()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.sweep_timeout

        for index, instance in enumerate(instances):
            budget = deadline - loop.time()
            if budget <= 0:
                left = instances[index:]
                logger.warning("Sweep budget exhausted", remaining=len(left))
                report.failed += len(left)
                report.failed_ids.extend(i.id for i in left)
                break

            timeout = min(self.manager.config.destroy_timeout, budget)
            if not await self.manager.teardown(instance, timeout=timeout):
                report.failed += 1
                report.failed_ids.append(instance.id)
                continue

            try:
                flipped = await self.manager.mark_destroyed(instance, actor_id=actor_id, reason=reason)
            except Exception as e:
                logger.error("Failed to mark instance destroyed", instance_id=instance.id, error=str(e))
                report.failed += 1
                report.failed_ids.append(instance.id)
                continue

            if flipped:
                report.cleaned += 1
                report.destroyed_ids.append(instance.id)
            else:
                # Destroyed concurrently by someone else
                report.skipped += 1

        if instances:
            logger.info(
                "Sweep finished",
                reason=reason,
                cleaned=report.cleaned,
                failed=report.failed,
            )
        return report

    # ------------------------------------------------------------------
    # Background loop
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the periodic expired-instance sweep."""
        self._running = True
        self._task = asyncio.create_task(self.run_periodically())
        logger.info("Sweep coordinator started", interval=self.interval_seconds)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Sweep coordinator stopped")

    async def run_periodically(self) -> None:
        """Background loop to clean up expired instances."""
        while self._running:
            try:
                await asyncio.sleep(self.interval_seconds)
                await self.clean_expired()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Error in sweep loop", error=str(e))
