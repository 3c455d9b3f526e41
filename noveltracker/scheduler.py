"""Background timers for the reconciliation loop.

Three independent timers run as asyncio tasks on the application's
event loop:

* chapter check every ``check_interval_hours`` hours, on the hour
  (00:00, 06:00, 12:00 ... for the default of six);
* daily summary at ``daily_summary_hour``:00;
* retention cleanup weekly on ``cleanup_weekday`` at ``cleanup_hour``:00.

Times are local. A job that fails is logged and the timer keeps going.
Overlap between the check and the daily summary is handled by the
loop's run guard, not here.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, List, Optional

from .config import Settings
from .reconciler import ReconciliationLoop

logger = logging.getLogger(__name__)


def next_interval_fire(now: datetime, hours: int) -> datetime:
    """Next full hour after ``now`` whose hour is a multiple of ``hours`` (a divisor of 24)."""
    candidate = now.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)
    while candidate.hour % hours != 0:
        candidate += timedelta(hours=1)
    return candidate


def next_daily_fire(now: datetime, hour: int) -> datetime:
    candidate = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


def next_weekly_fire(now: datetime, weekday: int, hour: int) -> datetime:
    candidate = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    candidate += timedelta(days=(weekday - now.weekday()) % 7)
    if candidate <= now:
        candidate += timedelta(days=7)
    return candidate


class Scheduler:
    def __init__(self, loop: ReconciliationLoop, settings: Settings,
                 clock: Callable[[], datetime] = datetime.now,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep) -> None:
        self.loop = loop
        self.settings = settings
        self._clock = clock
        self._sleep = sleep
        self._tasks: List[asyncio.Task] = []

    @property
    def started(self) -> bool:
        return bool(self._tasks)

    def start(self) -> None:
        if self._tasks:
            return
        logger.info("Starting novel scheduler...")
        s = self.settings
        self._tasks = [
            asyncio.create_task(self._timer(
                "chapter check", lambda now: next_interval_fire(now, s.check_interval_hours), self.loop.run)),
            asyncio.create_task(self._timer(
                "daily summary", lambda now: next_daily_fire(now, s.daily_summary_hour), self.loop.run_daily)),
            asyncio.create_task(self._timer(
                "weekly cleanup", lambda now: next_weekly_fire(now, s.cleanup_weekday, s.cleanup_hour),
                self.loop.cleanup)),
        ]
        logger.info("Scheduler started successfully")

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if tasks:
            logger.info("Scheduler stopped")

    async def _timer(self, name: str, next_fire: Callable[[datetime], datetime],
                     job: Callable[[], Any], iterations: Optional[int] = None) -> None:
        """Sleep until each fire time and run ``job``; ``iterations`` bounds it for tests."""
        count = 0
        while iterations is None or count < iterations:
            now = self._clock()
            fire_at = next_fire(now)
            logger.debug("Next %s at %s", name, fire_at.isoformat(timespec="minutes"))
            await self._sleep((fire_at - now).total_seconds())
            logger.info("Running scheduled %s...", name)
            try:
                outcome = job()
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception("Scheduled %s failed", name)
            count += 1
