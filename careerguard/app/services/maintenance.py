"""Periodic housekeeping for the throttling layer.

Runs store cleanup and prunes the metrics ledger on a fixed interval so
neither grows without bound during quiet periods.
"""

import asyncio
from typing import Any, Dict, Optional

from careerguard.app.core.logging import get_logger
from careerguard.app.middleware.rate_limit.service import RateLimitService
from careerguard.app.services.performance import PerformanceMonitor

logger = get_logger(__name__)


class MaintenanceScheduler:
    """Background loop calling RateLimitService.cleanup and PerformanceMonitor.prune."""

    def __init__(
        self,
        rate_limiter: RateLimitService,
        monitor: PerformanceMonitor,
        interval: float = 60.0,
    ):
        self.rate_limiter = rate_limiter
        self.monitor = monitor
        self.interval = interval
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self.runs = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> Dict[str, Any]:
        """Run one maintenance pass."""
        cleaned = await self.rate_limiter.cleanup()
        pruned = await self.monitor.prune()
        self.runs += 1
        logger.debug(f"Maintenance pass: {cleaned} store keys, {pruned} ledger samples")
        return {"cleaned_keys": cleaned, "pruned_samples": pruned}

    async def start(self) -> None:
        if self.running:
            logger.warning("Maintenance scheduler already running")
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        logger.info(f"Maintenance scheduler started (interval: {self.interval}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop_event.set()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Maintenance scheduler stopped")

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
                break
            except asyncio.TimeoutError:
                pass

            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Maintenance pass failed: {e}", exc_info=True)
