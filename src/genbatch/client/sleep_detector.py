"""Detects that the host process was suspended (laptop sleep, SIGSTOP).

A heartbeat ticks every ``interval`` seconds of wall-clock time. When the gap
between two ticks exceeds ``threshold`` the process was not running for a
while, so any open progress stream may have been cut without a final frame.
"""

import asyncio
import time
from typing import Awaitable, Callable, Optional

import structlog

logger = structlog.get_logger(__name__)

OnSleep = Callable[[float], Awaitable[None]]


class SleepDetector:
    def __init__(
        self,
        threshold: float = 10.0,
        interval: float = 2.0,
        on_sleep: Optional[OnSleep] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.threshold = threshold
        self.interval = interval
        self.on_sleep = on_sleep
        self.clock = clock
        self._last_tick = clock()
        self._task: Optional[asyncio.Task] = None

    async def check(self) -> bool:
        """Record a tick; fire ``on_sleep`` with the gap if it exceeds the threshold."""
        now = self.clock()
        gap = now - self._last_tick
        self._last_tick = now
        if gap <= self.threshold:
            return False

        logger.warning("sleep_detector.gap_detected", gap_seconds=round(gap, 1))
        if self.on_sleep is not None:
            await self.on_sleep(gap)
        return True

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            await self.check()

    def start(self) -> None:
        self._last_tick = self.clock()
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
