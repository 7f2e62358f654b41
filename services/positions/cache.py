"""Process-local count of open positions per instrument."""

from collections import defaultdict
from typing import Dict, List

from core.logging import get_logger
from core.trading.interfaces import PositionFilter, PositionRepository
from services.executor.locks import instrument_key

logger = get_logger(__name__, component="positions")


class OpenPositionsCache:
    """Filters streamed account events down to instruments we hold.

    Rebuilt from the store at startup; the lifecycle engine increments on
    open and decrements on every close path. Only mutated on the event loop.
    """

    def __init__(self):
        self._counts: Dict[str, int] = defaultdict(int)

    def increment(self, instrument: str) -> int:
        key = instrument_key(instrument)
        self._counts[key] += 1
        return self._counts[key]

    def decrement(self, instrument: str) -> int:
        key = instrument_key(instrument)
        remaining = self._counts.get(key, 0) - 1
        if remaining > 0:
            self._counts[key] = remaining
        else:
            self._counts.pop(key, None)
            remaining = 0
        return remaining

    def count(self, instrument: str) -> int:
        return self._counts.get(instrument_key(instrument), 0)

    def __contains__(self, instrument: str) -> bool:
        return self.count(instrument) > 0

    def instruments(self) -> List[str]:
        return sorted(self._counts)

    def snapshot(self) -> Dict[str, int]:
        return dict(self._counts)

    async def rebuild(self, store: PositionRepository) -> int:
        positions = await store.find(PositionFilter(open=True))
        self._counts.clear()
        for position in positions:
            self.increment(position.instrument)
        logger.info("Open positions cache rebuilt", positions=len(positions),
                    instruments=len(self._counts))
        return len(positions)
