from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from core.trading.models import (
    BrokerName,
    HistoryEvent,
    MarketType,
    OrderStatus,
    Position,
    SessionToken,
    TradeRecord,
)


@runtime_checkable
class SettlementSource(Protocol):
    """Broker surface the settlement resolver falls back through.

    ``get_order`` raises ``OrderNotFoundError`` when the broker does not know
    the order yet; any other exception is treated as a failed tier.
    """

    broker: BrokerName

    async def get_order(self, instrument: str, order_id: str) -> OrderStatus:
        ...

    async def get_trades(self, instrument: str, order_id: Optional[str] = None,
                         limit: Optional[int] = None) -> List[TradeRecord]:
        ...


@runtime_checkable
class NotificationSink(Protocol):
    """Fire-and-forget change notifications for real-time subscribers"""

    async def emit(self, event: str, payload: Dict[str, Any]) -> None:
        ...


@runtime_checkable
class AlertSink(Protocol):
    """Best-effort operator alerts; implementations must not raise"""

    async def send_alert(self, title: str, message: str, **kwargs: Any) -> bool:
        ...


@dataclass
class PositionFilter:
    """Equality filter over position fields; ``None`` means unconstrained"""

    id: Optional[int] = None
    broker: Optional[BrokerName] = None
    strategy: Optional[str] = None
    market: Optional[MarketType] = None
    instrument: Optional[str] = None
    broker_reference_id: Optional[str] = None
    open: Optional[bool] = None

    def as_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


class PositionRepository(ABC):
    """Persistence contract for position records"""

    @abstractmethod
    async def create(self, position: Position) -> int:
        ...

    @abstractmethod
    async def find(self, filter: PositionFilter, newest_first: bool = True,
                   limit: Optional[int] = None) -> List[Position]:
        ...

    @abstractmethod
    async def update_one(self, filter: PositionFilter, patch: Dict[str, Any]) -> bool:
        """Apply ``patch`` to at most one matching record; False when nothing matched."""

    @abstractmethod
    async def count_documents(self, filter: Optional[PositionFilter] = None) -> int:
        ...


class HistoryRepository(ABC):
    @abstractmethod
    async def record(self, event: HistoryEvent) -> None:
        ...


class SessionTokenRepository(ABC):
    @abstractmethod
    async def load(self, broker: str) -> Optional[SessionToken]:
        ...

    @abstractmethod
    async def upsert(self, token: SessionToken) -> None:
        ...
