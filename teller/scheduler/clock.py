"""
Time source for the teller loops.

Everything that waits goes through a Clock so tests can substitute one that
advances on demand.
"""

import asyncio
from datetime import datetime, timezone


class Clock:
    """Wall clock backed by asyncio.sleep."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


system_clock = Clock()
