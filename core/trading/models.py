from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, field_validator


class Side(str, Enum):
    BUY = "BUY"
    SELL = "SELL"

    @property
    def opposite(self) -> "Side":
        return Side.SELL if self is Side.BUY else Side.BUY


class MarketType(str, Enum):
    SPOT = "SPOT"
    FUTURE = "FUTURE"
    CFD = "CFD"


class BrokerName(str, Enum):
    BINANCE = "binance"
    CAPITAL = "capital"


class TaskKind(str, Enum):
    REVERSE = "reverse"
    OPEN = "open"
    CLOSE = "close"


class SettlementTier(str, Enum):
    EMBEDDED_FILLS = "embedded_fills"
    ORDER_LOOKUP = "order_lookup"
    TRADE_HISTORY = "trade_history"
    RECENT_TRADES = "recent_trades"
    UNRESOLVED = "unresolved"


class TradeIntent(BaseModel):
    """Caller request to trade ``size`` of ``instrument`` for ``strategy``"""

    instrument: str
    size: float = Field(gt=0)
    side: Side
    strategy: str = Field(min_length=1)
    market: MarketType
    broker: BrokerName
    leverage: Optional[int] = None

    @field_validator("instrument")
    @classmethod
    def normalize_instrument(cls, v: str) -> str:
        v = v.strip().upper()
        if not v:
            raise ValueError("instrument is required")
        return v

    @property
    def instrument_key(self) -> str:
        return self.instrument


class Task(BaseModel):
    """Unit of work carried by the task transport"""

    task_id: str
    kind: TaskKind = TaskKind.REVERSE
    payload: TradeIntent
    description: str = ""
    attempts: int = 0
    not_before_ms: Optional[int] = None

    @property
    def instrument(self) -> str:
        return self.payload.instrument


class Position(BaseModel):
    """Locally persisted position record"""

    id: Optional[int] = None
    broker_reference_id: Optional[str] = None
    strategy: str
    instrument: str
    market: MarketType
    side: Side
    size: float
    leverage: float = 0.0
    open: bool = True
    buy_price: float = 0.0
    sell_price: float = 0.0
    realized_pnl: Optional[float] = None
    broker: BrokerName
    placeholder: bool = False
    opened_at: datetime
    localized_opened_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class HistoryEvent(BaseModel):
    """Immutable audit entry for a position open or close"""

    event_id: str
    position_id: Optional[int] = None
    event: str  # OPEN | CLOSE
    broker: BrokerName
    instrument: str
    strategy: str
    side: Side
    size: float
    notional: float = 0.0
    unit_price: float = 0.0
    settlement_tier: Optional[SettlementTier] = None
    broker_reference_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    localized_created_at: Optional[datetime] = None


class SessionToken(BaseModel):
    broker: str
    security_token: str
    client_session_token: str
    issued_at_ms: int


@dataclass
class Fill:
    qty: float
    price: float
    quote_qty: Optional[float] = None

    @property
    def notional(self) -> float:
        return self.quote_qty if self.quote_qty is not None else self.price * self.qty


@dataclass
class OrderAck:
    """Broker acknowledgement of a submitted order.

    ``order_id`` is what the resolver looks up; ``reference_id`` is what is
    persisted as the position's broker reference (they differ for Capital,
    where the ack carries a deal reference and the position a deal id).
    """

    broker: BrokerName
    instrument: str
    order_id: Optional[str]
    reference_id: Optional[str] = None
    fills: List[Fill] = field(default_factory=list)
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TradeRecord:
    order_id: Optional[str]
    qty: float
    quote_qty: float
    realized_pnl: float = 0.0
    time_ms: int = 0
    # Position the trade touched, where the broker keys positions apart from orders
    reference_id: Optional[str] = None


@dataclass
class OrderStatus:
    order_id: str
    status: str
    executed_qty: float
    cumulative_quote: float
    avg_price: float = 0.0
    reference_id: Optional[str] = None


@dataclass(frozen=True)
class Settlement:
    unit_price: float
    filled_qty: float
    total_notional: float
    tier: SettlementTier
    reference_id: Optional[str] = None

    @property
    def low_confidence(self) -> bool:
        return self.tier is SettlementTier.RECENT_TRADES


@dataclass(frozen=True)
class Unresolved:
    reason: str
    # The broker answered that the order was refused; nothing was filled
    rejected: bool = False
    tier: SettlementTier = SettlementTier.UNRESOLVED


SettlementResult = Union[Settlement, Unresolved]


@dataclass
class ClosedProceeds:
    """Backfilled close information for a position closed outside the gateway"""

    notional: float
    reference_id: Optional[str] = None
    source: str = "history"


@dataclass
class CloseReport:
    closed: List[Position] = field(default_factory=list)
    failed: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


@dataclass
class ExecutionResult:
    """Outcome returned to task submitters"""

    kind: TaskKind
    broker: str
    strategy: str
    instrument: str
    status: str
    opened: Optional[Position] = None
    closed: List[Position] = field(default_factory=list)
    data: Dict[str, Any] = field(default_factory=dict)
    error_message: Optional[str] = None
