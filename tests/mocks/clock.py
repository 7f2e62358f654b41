import asyncio
from datetime import datetime, timedelta, timezone
from typing import List, Optional


class ManualClock:
    """Clock whose time only moves when a test (or a sleep) advances it."""

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        self._monotonic = 0.0
        self.sleeps: List[float] = []

    def now(self) -> datetime:
        return self._now

    def monotonic(self) -> float:
        return self._monotonic

    def advance(self, seconds: float) -> None:
        self._now += timedelta(seconds=seconds)
        self._monotonic += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)
        await asyncio.sleep(0)
