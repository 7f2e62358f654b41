"""In-memory stand-ins for the PostgreSQL repositories."""

from typing import Any, Dict, List, Optional, Tuple

from core.trading.interfaces import (
    HistoryRepository,
    PositionFilter,
    PositionRepository,
    SessionTokenRepository,
)
from core.trading.models import HistoryEvent, Position, SessionToken


def _matches(position: Position, filter: Optional[PositionFilter]) -> bool:
    if filter is None:
        return True
    return all(getattr(position, key) == value for key, value in filter.as_dict().items())


class InMemoryPositionStore(PositionRepository):
    def __init__(self):
        self.records: Dict[int, Position] = {}
        self.mutations: List[Tuple[Any, ...]] = []
        self._next_id = 1

    async def create(self, position: Position) -> int:
        position_id = self._next_id
        self._next_id += 1
        self.records[position_id] = position.model_copy(update={"id": position_id})
        self.mutations.append(("create", position_id))
        return position_id

    async def find(self, filter: PositionFilter, newest_first: bool = True,
                   limit: Optional[int] = None) -> List[Position]:
        found = sorted(
            (p for p in self.records.values() if _matches(p, filter)),
            key=lambda p: (p.opened_at, p.id),
            reverse=newest_first,
        )
        return found[:limit] if limit is not None else found

    async def update_one(self, filter: PositionFilter, patch: Dict[str, Any]) -> bool:
        for position_id in sorted(self.records):
            position = self.records[position_id]
            if _matches(position, filter):
                self.records[position_id] = position.model_copy(update=patch)
                self.mutations.append(("update", position_id, dict(patch)))
                return True
        return False

    async def count_documents(self, filter: Optional[PositionFilter] = None) -> int:
        return sum(1 for p in self.records.values() if _matches(p, filter))

    def add(self, position: Position) -> Position:
        """Seed a record without logging a mutation."""
        position_id = self._next_id
        self._next_id += 1
        stored = position.model_copy(update={"id": position_id})
        self.records[position_id] = stored
        return stored


class InMemoryHistoryStore(HistoryRepository):
    def __init__(self):
        self.events: List[HistoryEvent] = []

    async def record(self, event: HistoryEvent) -> None:
        self.events.append(event)


class InMemoryTokenRepository(SessionTokenRepository):
    def __init__(self, token: Optional[SessionToken] = None):
        self.tokens: Dict[str, SessionToken] = {}
        self.upserts = 0
        if token is not None:
            self.tokens[token.broker] = token

    async def load(self, broker: str) -> Optional[SessionToken]:
        return self.tokens.get(broker)

    async def upsert(self, token: SessionToken) -> None:
        self.upserts += 1
        self.tokens[token.broker] = token
