"""
Injectable time sources.

Services take a ``Clock`` instead of calling ``datetime.now``/``asyncio.sleep``
directly so throttling, TTL expiry and reconciliation windows can be driven
deterministically from tests.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Protocol, runtime_checkable


@runtime_checkable
class Clock(Protocol):
    def now(self) -> datetime: ...

    def monotonic(self) -> float: ...

    async def sleep(self, seconds: float) -> None: ...


class SystemClock:
    """Wall clock backed by the running event loop."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return asyncio.get_running_loop().time()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


def to_epoch_millis(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


def from_epoch_millis(millis: int) -> datetime:
    return datetime.fromtimestamp(millis / 1000, tz=timezone.utc)


def localize(moment: datetime, utc_offset_hours: int) -> datetime:
    """Shift a UTC timestamp into the reporting offset, dropping tzinfo."""
    return (moment + timedelta(hours=utc_offset_hours)).replace(tzinfo=None)
