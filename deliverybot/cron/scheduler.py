"""Daily expiry sweep scheduler.

Fires once a day at a wall-clock time (`sweep.at`, default 09:00) in the
configured timezone, or in system local time when none is set. A firing that
lands while the previous sweep is still running is skipped, not queued.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import datetime, timedelta, tzinfo
from typing import Awaitable, Callable

from deliverybot.config.schema import SweepScheduleConfig
from deliverybot.core.models import SweepReport
from deliverybot.core.orchestrator import utcnow
from deliverybot.core.sweeper import ExpirySweeper

logger = logging.getLogger(__name__)


def next_fire_after(now: datetime, at: str, tz: tzinfo | None = None) -> datetime:
    """Next occurrence of `HH:MM` strictly after `now`.

    Args:
        now: Timezone-aware current time
        at: Wall-clock time, "HH:MM"
        tz: Zone the wall clock is read in; None for system local time

    Returns:
        Aware datetime in `tz` (or local time)
    """
    if now.tzinfo is None:
        raise ValueError("now must be timezone-aware")
    hour, minute = (int(part) for part in at.split(":"))
    local_now = now.astimezone(tz)
    candidate = local_now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if candidate <= local_now:
        candidate += timedelta(days=1)
    return candidate


class SweepScheduler:
    """Background loop that triggers `ExpirySweeper.sweep()` once per day."""

    def __init__(
        self,
        sweeper: ExpirySweeper,
        schedule: SweepScheduleConfig,
        *,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.sweeper = sweeper
        self.schedule = schedule
        self.clock = clock
        self._sleep = sleep
        self._task: asyncio.Task[None] | None = None
        self._sweep_task: asyncio.Task[SweepReport] | None = None
        self.next_fire_at: datetime | None = None
        self.last_report: SweepReport | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self._loop(), name="expiry-sweep-scheduler")
        logger.info("Expiry monitor started (daily at %s %s)", self.schedule.at, self.schedule.timezone or "local time")

    async def stop(self) -> None:
        for task in (self._task, self._sweep_task):
            if task is None or task.done():
                continue
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._task = None
        self._sweep_task = None

    def fire(self) -> asyncio.Task[SweepReport] | None:
        """Start a sweep now unless the previous one is still running."""
        if self._sweep_task is not None and not self._sweep_task.done():
            logger.warning("Previous license check still running; skipping this firing")
            return None
        self._sweep_task = asyncio.create_task(self.sweeper.sweep(), name="expiry-sweep")
        self._sweep_task.add_done_callback(self._on_sweep_done)
        return self._sweep_task

    def _on_sweep_done(self, task: asyncio.Task[SweepReport]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("License check crashed: %s", exc, exc_info=exc)
            return
        self.last_report = task.result()

    async def _loop(self) -> None:
        last_fire: datetime | None = None
        while True:
            now = self.clock()
            # never fire the same slot twice when the sleep wakes up early
            reference = max(now, last_fire) if last_fire else now
            fire_at = next_fire_after(reference, self.schedule.at, self.schedule.tzinfo)
            self.next_fire_at = fire_at
            delay = max(0.0, (fire_at - now).total_seconds())
            logger.debug("Next license check at %s (in %.0fs)", fire_at.isoformat(), delay)
            await self._sleep(delay)
            last_fire = fire_at
            logger.info("Daily license check")
            self.fire()
