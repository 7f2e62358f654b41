# Database models for gateway state
from sqlalchemy import Column, Integer, BigInteger, String, Float, Boolean, DateTime, Index
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func
from .connection import Base


class PositionRecord(Base):
    """Trading ledger: one row per position, closed rows are never deleted"""
    __tablename__ = "movements"

    id = Column(Integer, primary_key=True, index=True)
    broker_reference_id = Column(String, nullable=True, index=True)
    strategy = Column(String, nullable=False)
    instrument = Column(String, nullable=False)
    market = Column(String, nullable=False)   # SPOT | FUTURE | CFD
    side = Column(String, nullable=False)     # BUY | SELL
    size = Column(Float, nullable=False)
    leverage = Column(Float, default=0.0, nullable=False)
    open = Column(Boolean, default=True, nullable=False)
    buy_price = Column(Float, default=0.0, nullable=False)   # open notional
    sell_price = Column(Float, default=0.0, nullable=False)  # close notional
    realized_pnl = Column(Float, nullable=True)
    broker = Column(String, nullable=False)
    placeholder = Column(Boolean, default=False, nullable=False)
    opened_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    localized_opened_at = Column(DateTime(timezone=False), nullable=True)
    closed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index('idx_movements_open_strategy', 'broker', 'strategy', 'open'),
        Index('idx_movements_open_instrument', 'broker', 'instrument', 'open'),
        Index('idx_movements_opened_at', 'opened_at'),
    )


class HistoryEventRecord(Base):
    """Immutable audit entry for each position open and close"""
    __tablename__ = "history_events"

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(String, unique=True, nullable=False, index=True)
    position_id = Column(Integer, nullable=True, index=True)  # weak reference to movements.id
    event = Column(String, nullable=False)  # OPEN | CLOSE
    broker = Column(String, nullable=False)
    instrument = Column(String, nullable=False)
    strategy = Column(String, nullable=False)
    side = Column(String, nullable=False)
    size = Column(Float, nullable=False)
    notional = Column(Float, default=0.0, nullable=False)
    unit_price = Column(Float, default=0.0, nullable=False)
    settlement_tier = Column(String, nullable=True)
    broker_reference_id = Column(String, nullable=True)
    details = Column(JSONB, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    localized_created_at = Column(DateTime(timezone=False), nullable=True)

    __table_args__ = (
        Index('idx_history_events_strategy_time', 'strategy', 'created_at'),
    )


class SessionTokenRecord(Base):
    """Cached broker session credentials, one row per broker"""
    __tablename__ = "session_tokens"

    id = Column(Integer, primary_key=True, index=True)
    broker = Column(String, nullable=False, unique=True, index=True)
    security_token = Column(String, nullable=False)
    client_session_token = Column(String, nullable=False)
    issued_at_ms = Column(BigInteger, nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
