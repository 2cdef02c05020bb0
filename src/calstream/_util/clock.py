"""Injectable clock so session cadence can be driven without wall-clock sleeps."""

from __future__ import annotations

import time

import anyio
import anyio.lowlevel


class Clock:
    """Wall-clock time plus a cooperative sleep."""

    def now(self) -> float:
        return time.time()

    async def sleep(self, seconds: float) -> None:
        await anyio.sleep(seconds)


class ManualClock(Clock):
    """Clock whose time only moves when sleep() or advance() is called."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self._now = start
        self.sleeps: list[float] = []

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> None:
        self._now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self._now += seconds
        # Still yield to the event loop so other tasks make progress.
        await anyio.lowlevel.checkpoint()


SYSTEM_CLOCK = Clock()
