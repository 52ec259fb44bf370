"""
Main daemon entry point — starts the scheduler and the webhook server.

Runs as: python -m vaultkube.sync.daemon  (or ``vaultkube daemon``)

Subsystems:
- Interval scheduler (APScheduler), full sync at startup then every interval
- Health + webhook endpoint (FastAPI)

SIGTERM/SIGINT cancel the in-flight run between Secrets and stop the loop.
"""

from __future__ import annotations

import asyncio
import logging
import signal

from vaultkube.config import Config, get_config
from vaultkube.db.connection import close_pool
from vaultkube.sync.applier import ClusterApplier
from vaultkube.sync.coordinator import SyncCoordinator
from vaultkube.sync.health import serve
from vaultkube.sync.scheduler import SyncScheduler
from vaultkube.sync.store import StateStore
from vaultkube.sync.vault import BitwardenCLI

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def build_coordinator(config: Config) -> SyncCoordinator:
    """Wire the production collaborators."""
    return SyncCoordinator(
        config,
        fetcher=BitwardenCLI(config.vault),
        applier=ClusterApplier(config.kubernetes),
        store=StateStore(),
    )


async def main(config: Config | None = None) -> None:
    """Start all daemon subsystems."""
    config = config or get_config()
    configure_logging(config.log_level)

    logger.info("Starting vaultkube sync daemon...")
    logger.info("Sync interval: %ds (continuous=%s)", config.sync.interval_seconds, config.sync.continuous)
    logger.info("Delete orphans: %s, dry run: %s", config.sync.delete_orphans, config.sync.dry_run)
    logger.info("Webhook: %s", f"port {config.webhook.port}" if config.webhook.enabled else "disabled")

    coordinator = build_coordinator(config)
    scheduler = SyncScheduler(config.sync, coordinator)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop.set)

    tasks = [
        asyncio.create_task(scheduler.start(), name="scheduler"),
        asyncio.create_task(stop.wait(), name="signals"),
    ]
    if config.webhook.enabled:
        tasks.append(asyncio.create_task(serve(config, coordinator), name="webhook"))

    logger.info("All subsystems started")

    done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    for task in done:
        if not task.cancelled() and task.exception():
            logger.error("Task %s failed: %s", task.get_name(), task.exception())
        else:
            logger.info("Task %s completed", task.get_name())

    logger.info("Shutting down subsystems...")
    coordinator.cancel()
    scheduler.stop()
    for task in pending:
        task.cancel()
    await asyncio.gather(*pending, return_exceptions=True)
    close_pool()
    logger.info("vaultkube stopped")


if __name__ == "__main__":
    asyncio.run(main())
