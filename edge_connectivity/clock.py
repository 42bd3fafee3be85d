"""Clock used by every timed component of a TestRun"""

import asyncio
import time
from datetime import datetime, timezone


class Clock:
    """Wall and monotonic time plus sleeping

    Components take a Clock instead of calling asyncio.sleep directly so a
    TestRun can be driven on simulated time.
    """

    def monotonic(self) -> float:
        return time.monotonic()

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))

    async def sleep_until(self, deadline: float) -> None:
        """Sleep until the monotonic clock reaches deadline"""
        while True:
            remaining = deadline - self.monotonic()
            if remaining <= 0:
                return
            await self.sleep(remaining)
