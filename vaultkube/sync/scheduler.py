"""
Interval scheduler — APScheduler wrapper for periodic full syncs.

The coordinator is synchronous; each tick runs it in the default executor so
the event loop (webhook server) stays responsive. max_instances=1 plus the
global lock keep ticks from overlapping.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from vaultkube.sync.models import TriggerKind

if TYPE_CHECKING:
    from vaultkube.config import SyncConfig
    from vaultkube.sync.coordinator import SyncCoordinator
    from vaultkube.sync.summary import SyncSummary

logger = logging.getLogger(__name__)

JOB_ID = "vaultkube:full-sync"


class SyncScheduler:
    """Runs a full sync at startup and then every ``interval_seconds``."""

    def __init__(self, config: SyncConfig, coordinator: SyncCoordinator) -> None:
        self.config = config
        self.coordinator = coordinator
        self.scheduler = AsyncIOScheduler(timezone="UTC")

    async def start(self) -> None:
        """Register the sync job and keep the scheduler alive."""
        next_run = datetime.now(UTC)
        if self.config.continuous:
            self.scheduler.add_job(
                self._run_sync,
                trigger=IntervalTrigger(seconds=self.config.interval_seconds, timezone="UTC"),
                id=JOB_ID,
                name="full sync",
                next_run_time=next_run,
                max_instances=1,
                coalesce=True,
                misfire_grace_time=60,
            )
            logger.info("Full sync scheduled every %ds", self.config.interval_seconds)
        else:
            self.scheduler.add_job(self._run_sync, id=JOB_ID, name="full sync (once)", next_run_time=next_run)
            logger.info("Continuous sync disabled; running a single full sync")

        self.scheduler.start()
        while True:
            await asyncio.sleep(3600)

    async def _run_sync(self) -> SyncSummary | None:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, self.coordinator.run_full, TriggerKind.SCHEDULED)
        except Exception as e:
            logger.error("Scheduled sync failed: %s", e)
            return None

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
