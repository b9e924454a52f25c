"""Wall clock and cooperative sleep, injectable for tests."""

from __future__ import annotations

import asyncio
import time


class Clock:
    """Epoch-millisecond clock. Every suspension point of a session goes through sleep()."""

    def now_ms(self) -> int:
        return int(time.time() * 1000)

    async def sleep(self, ms: int | float) -> None:
        await asyncio.sleep(max(0, ms) / 1000)


SYSTEM_CLOCK = Clock()
