from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Protocol


class Clock(Protocol):
    def now(self) -> float:
        """Return monotonic seconds."""

    async def sleep(self, seconds: float) -> None: ...


class SystemClock:
    def now(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


@dataclass(slots=True)
class FakeClock:
    """Manual clock; `sleep` jumps time forward and only yields to the loop."""

    _now: float = 0.0
    sleeps: int = 0

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> None:
        if seconds < 0:
            raise ValueError("seconds must be >= 0")
        self._now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps += 1
        self.advance(max(seconds, 0.0))
        await asyncio.sleep(0)
