"""
Fixed-Interval Scheduler

ScheduledLoop fires an async callback every `interval` seconds measured
from the original schedule, so a slow collection cycle shortens the next
wait instead of pushing every later cycle back.

Usage:
    loop = ScheduledLoop(5.0, collect_cycle, name="collect")
    await loop.start()
    ...
    await loop.stop()
"""

import asyncio
import time
from typing import Awaitable, Callable

from .logging_setup import get_service_logger

logger = get_service_logger("scheduler")

# A single late wake-up larger than this is treated as a clock jump
CLOCK_JUMP_THRESHOLD_S = 30


class ScheduledLoop:
    """
    Interval scheduler that accounts for callback execution time.

    Missed intervals are skipped (never queued up), and a callback that
    raises is logged without stopping the loop.
    """

    def __init__(
        self,
        interval_seconds: float,
        callback: Callable[[], Awaitable[None]],
        name: str = "unnamed",
        initial_delay: float = 0.0,
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")

        self.interval = interval_seconds
        self.callback = callback
        self.name = name
        self.initial_delay = initial_delay

        self._next_run: float = 0
        self._running = False
        self._task: asyncio.Task | None = None

        self._execution_count = 0
        self._error_count = 0
        self._skipped_count = 0
        self._last_execution_time: float = 0
        self._last_drift_ms: float = 0

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the loop in a background task."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run(), name=f"scheduled:{self.name}")

    async def stop(self) -> None:
        """Stop the loop and wait for the task to finish."""
        self._running = False
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        if self.initial_delay > 0:
            await asyncio.sleep(self.initial_delay)
        self._next_run = time.monotonic()

        while self._running:
            delay = self._next_run - time.monotonic()
            if delay > 0:
                await asyncio.sleep(delay)
            if not self._running:
                break

            drift = time.monotonic() - self._next_run
            if drift > CLOCK_JUMP_THRESHOLD_S:
                logger.info(f"Scheduler '{self.name}' woke {drift:.0f}s late, realigning")
                self._next_run = time.monotonic()
                self._last_drift_ms = 0
            else:
                self._last_drift_ms = max(0.0, drift) * 1000

            start = time.monotonic()
            try:
                await self.callback()
                self._execution_count += 1
            except asyncio.CancelledError:
                raise
            except Exception:
                self._error_count += 1
                logger.exception(f"Scheduled callback '{self.name}' failed")
            self._last_execution_time = time.monotonic() - start

            self._next_run += self.interval
            now = time.monotonic()
            skipped = 0
            while self._next_run <= now:
                self._next_run += self.interval
                skipped += 1
            if skipped:
                self._skipped_count += skipped
                logger.warning(
                    f"Scheduler '{self.name}' skipped {skipped} intervals "
                    f"(execution took {self._last_execution_time:.3f}s, interval {self.interval}s)"
                )

    def get_stats(self) -> dict:
        """Get scheduler statistics for observability."""
        return {
            "name": self.name,
            "interval_s": self.interval,
            "execution_count": self._execution_count,
            "error_count": self._error_count,
            "skipped_count": self._skipped_count,
            "drift_last_ms": round(self._last_drift_ms, 1),
            "last_execution_s": round(self._last_execution_time, 3),
        }
