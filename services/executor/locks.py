"""Per-instrument mutual exclusion shared by every task entry point."""

from contextlib import asynccontextmanager
from enum import Enum
from typing import AsyncIterator, Optional

from core.monitoring.prometheus_metrics import GatewayMetrics
from core.utils.exceptions import InstrumentLockedError


class LockState(str, Enum):
    FREE = "FREE"
    LOCKED = "LOCKED"


def instrument_key(instrument: str) -> str:
    return instrument.strip().upper()


class InstrumentLockRegistry:
    """Non-blocking FREE/LOCKED flag per instrument symbol.

    Acquisition never waits: a busy instrument raises ``InstrumentLockedError``
    so the caller can hand the task back to its transport for delayed
    redelivery. All holders run on one event loop, so a set is enough.
    """

    def __init__(self, metrics: Optional[GatewayMetrics] = None):
        self._held: set[str] = set()
        self.metrics = metrics

    def state(self, instrument: str) -> LockState:
        return LockState.LOCKED if instrument_key(instrument) in self._held else LockState.FREE

    def is_locked(self, instrument: str) -> bool:
        return self.state(instrument) is LockState.LOCKED

    def try_acquire(self, instrument: str) -> bool:
        key = instrument_key(instrument)
        if key in self._held:
            return False
        self._held.add(key)
        self._report()
        return True

    def release(self, instrument: str) -> None:
        self._held.discard(instrument_key(instrument))
        self._report()

    @asynccontextmanager
    async def hold(self, instrument: str) -> AsyncIterator[None]:
        if not self.try_acquire(instrument):
            raise InstrumentLockedError(instrument_key(instrument))
        try:
            yield
        finally:
            self.release(instrument)

    @property
    def held(self) -> frozenset[str]:
        return frozenset(self._held)

    def _report(self) -> None:
        if self.metrics is not None:
            self.metrics.instruments_locked.set(len(self._held))
