"""
station/services/timers.py

Clock and timer primitives used by the core engines.
- utc_now: default wall clock
- AsyncioTimers: cancelable one-shot timers on the running event loop
- TickLoop: fires a callback on aligned wall-clock interval boundaries

The engines depend only on the Clock / Timers shapes below, so tests can drive
them with a manual clock instead of sleeping.
"""

import asyncio
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, Protocol

import structlog

logger = structlog.get_logger(__name__)

Clock = Callable[[], datetime]

# A late wake-up larger than this is treated as a clock jump, not drift
_CLOCK_JUMP_S: float = 30.0


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Timers(Protocol):
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...


class AsyncioTimers:
    """Timers backed by loop.call_later; the returned handle cancels the timer."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        loop = self._loop or asyncio.get_running_loop()
        return loop.call_later(max(0.0, delay), callback)


class TickLoop:
    """
    Interval loop that fires at wall-clock boundaries.

    The next run is scheduled relative to the original schedule, not to when
    the callback finished. Missed intervals are skipped rather than queued.
    """

    def __init__(
        self,
        interval_seconds: float,
        callback: Callable[[], Awaitable[None]],
        name: str = "tick",
    ) -> None:
        self.interval = interval_seconds
        self.callback = callback
        self.name = name

        self._next_run: float = 0
        self._running = False
        self._task: Optional[asyncio.Task] = None

        self._execution_count: int = 0
        self._skipped_count: int = 0
        self._last_drift_ms: float = 0

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run())
        logger.info("tick_loop_started", name=self.name, interval_s=self.interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("tick_loop_stopped", name=self.name)

    async def _run(self) -> None:
        now = time.time()
        self._next_run = ((now // self.interval) + 1) * self.interval

        while self._running:
            sleep_duration = self._next_run - time.time()
            if sleep_duration > 0:
                await asyncio.sleep(sleep_duration)

            if not self._running:
                break

            drift = time.time() - self._next_run
            if drift > _CLOCK_JUMP_S:
                logger.info("tick_loop_clock_jump", name=self.name, jump_s=round(drift))
                self._last_drift_ms = 0
            else:
                self._last_drift_ms = drift * 1000

            try:
                await self.callback()
                self._execution_count += 1
            except Exception as exc:
                logger.error("tick_callback_failed", name=self.name, error=str(exc))

            now = time.time()
            skipped = 0
            while self._next_run <= now:
                self._next_run += self.interval
                skipped += 1
            if skipped > 1:
                self._skipped_count += skipped - 1
                logger.warning(
                    "tick_intervals_skipped", name=self.name, skipped=skipped - 1
                )

    def get_stats(self) -> dict:
        return {
            "name": self.name,
            "interval_s": self.interval,
            "execution_count": self._execution_count,
            "skipped_count": self._skipped_count,
            "drift_last_ms": round(self._last_drift_ms, 1),
        }
