"""
Periodic health sweep trigger, run inside the service process.
"""

import asyncio
from typing import Optional

from shared.logging import get_logger

from service_hub.app.health.monitor import HealthMonitor


class HealthSweepScheduler:
    """Re-runs ``HealthMonitor.sweep_all`` every ``interval_seconds``."""

    def __init__(self, monitor: HealthMonitor, interval_seconds: float):
        self.monitor = monitor
        self.interval_seconds = interval_seconds
        self.logger = get_logger("hub.health_scheduler")
        self._task: Optional[asyncio.Task] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run())
        self.logger.info("Health sweep scheduler started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        self.logger.info("Health sweep scheduler stopped")

    async def _run(self) -> None:
        while self._running:
            try:
                await self.monitor.sweep_all()
            except Exception as e:
                self.logger.error("Scheduled health sweep failed", error=str(e))
            await asyncio.sleep(self.interval_seconds)
