"""
Periodic background refresh.

Each refresher owns an APScheduler ``AsyncIOScheduler`` with a single
interval job. ``stop()`` removes the job and shuts the scheduler down, which
also cancels a tick that is still in flight.
"""
import asyncio
from typing import Awaitable, Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from access_admin.core import config
from access_admin.utils import get_logger


log = get_logger(__name__)


class PeriodicRefresher:
    """Re-run an async callback every ``interval`` seconds while started."""

    def __init__(self, callback: Callable[[], Awaitable[object]], *, name: str = "refresh"):
        self._callback = callback
        self._name = name
        self._scheduler: Optional[AsyncIOScheduler] = None
        self.interval: float = config.AUTO_REFRESH_INTERVAL

    @property
    def job_id(self) -> str:
        return f"auto-refresh:{self._name}"

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self, interval: Optional[float] = None) -> None:
        """Start (or restart with a new interval). A non-positive interval disables the timer."""
        if interval is not None:
            self.interval = interval
        self._shutdown()
        if self.interval <= 0:
            log.debug("Auto-refresh %s disabled (interval=%s)", self._name, self.interval)
            return

        self._scheduler = AsyncIOScheduler(
            event_loop=asyncio.get_running_loop(),
            job_defaults={
                'coalesce': True,  # Skipped ticks collapse into one
                'max_instances': 1,  # A slow tick is never overlapped
            },
            timezone='UTC',
        )
        self._scheduler.add_job(
            self._tick,
            trigger=IntervalTrigger(seconds=self.interval),
            id=self.job_id,
            name=self.job_id,
            replace_existing=True,
        )
        self._scheduler.start()
        log.debug("Auto-refresh %s started every %ss", self._name, self.interval)

    async def stop(self) -> None:
        if self._shutdown():
            log.debug("Auto-refresh %s stopped", self._name)

    def _shutdown(self) -> bool:
        scheduler, self._scheduler = self._scheduler, None
        if scheduler is None or not scheduler.running:
            return False
        if scheduler.get_job(self.job_id) is not None:
            scheduler.remove_job(self.job_id)
        scheduler.shutdown(wait=False)
        return True

    async def _tick(self) -> None:
        try:
            await self._callback()
        except Exception as e:
            # A failed tick must not kill the timer; the next tick retries.
            log.warning("Auto-refresh %s failed: %s", self._name, e)
