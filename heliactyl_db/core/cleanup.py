"""Periodic maintenance for a database handle.

Runs two background loops:
- Expiry sweep: deletes expired rows (only when TTL support is enabled)
- Queue telemetry: logs queue depth and average operation time
"""
import asyncio
from typing import Dict, List, Optional, TYPE_CHECKING

from heliactyl_db.core.logging import get_logger

if TYPE_CHECKING:
    from heliactyl_db.core.config import Settings
    from heliactyl_db.core.database import KeyValueDatabase

logger = get_logger(__name__)


class MaintenanceService:
    """Background sweep and telemetry bound to one database handle."""

    def __init__(self, database: "KeyValueDatabase", settings: "Settings"):
        self.database = database
        self.settings = settings
        self._running = False
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the background loops."""
        if self._running:
            return
        self._running = True

        if self.database.ttl_support:
            self._tasks.append(asyncio.create_task(self._sweep_loop()))
        if self.settings.stats_interval > 0:
            self._tasks.append(asyncio.create_task(self._stats_loop()))

        logger.info(
            "Maintenance service started",
            cleanup_interval=self.settings.cleanup_interval if self.database.ttl_support else None,
            stats_interval=self.settings.stats_interval or None
        )

    async def stop(self) -> None:
        """Stop the background loops gracefully."""
        self._running = False
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        logger.info("Maintenance service stopped")

    async def _sweep_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.settings.cleanup_interval)
            try:
                await self._sweep()
            except Exception as e:
                logger.error("Expired entry cleanup failed", error=str(e))

    async def _stats_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.settings.stats_interval)
            self.log_queue_stats()

    async def _sweep(self) -> int:
        removed = await self.database.cleanup_expired()
        if removed:
            logger.info("Cleaned up expired entries", count=removed)
        return removed

    def log_queue_stats(self) -> Dict[str, float]:
        stats = self.database.queue.stats
        data = {
            "queue_length": len(self.database.queue),
            "average_operation_time_ms": round(stats.average_operation_time, 2),
        }
        logger.info("Queue statistics", **data)
        return data

    async def run_once(self) -> Dict[str, Optional[float]]:
        """Run one sweep and one telemetry emission. Useful for testing."""
        results: Dict[str, Optional[float]] = {"expired": await self._sweep()}
        results.update(self.log_queue_stats())
        return results
