"""PostgreSQL position ledger and history store."""

from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select, update

from core.database.connection import DatabaseManager
from core.database.models import HistoryEventRecord, PositionRecord
from core.logging import get_database_logger_safe
from core.trading.interfaces import HistoryRepository, PositionFilter, PositionRepository
from core.trading.models import HistoryEvent, Position

logger = get_database_logger_safe(__name__)


def _column_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def _columns(data: Dict[str, Any]) -> Dict[str, Any]:
    return {key: _column_value(value) for key, value in data.items()}


def _conditions(filter: Optional[PositionFilter]) -> list:
    if filter is None:
        return []
    return [getattr(PositionRecord, key) == _column_value(value) for key, value in filter.as_dict().items()]


class SqlPositionStore(PositionRepository):
    """Position records in the ``movements`` table.

    ``update_one`` re-applies the filter in the UPDATE itself, so a patch
    guarded by ``open=True`` lands at most once even when two closers race.
    """

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    async def create(self, position: Position) -> int:
        async with self.db_manager.get_session() as session:
            record = PositionRecord(**_columns(position.model_dump(exclude={"id"})))
            session.add(record)
            await session.commit()
            logger.info("Position created", position_id=record.id, broker=record.broker,
                        strategy=record.strategy, instrument=record.instrument, side=record.side,
                        placeholder=record.placeholder)
            return record.id

    async def find(self, filter: PositionFilter, newest_first: bool = True,
                   limit: Optional[int] = None) -> List[Position]:
        order = (PositionRecord.opened_at.desc(), PositionRecord.id.desc()) if newest_first \
            else (PositionRecord.opened_at.asc(), PositionRecord.id.asc())
        stmt = select(PositionRecord).where(*_conditions(filter)).order_by(*order)
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self.db_manager.get_session() as session:
            result = await session.execute(stmt)
            return [Position.model_validate(row) for row in result.scalars().all()]

    async def update_one(self, filter: PositionFilter, patch: Dict[str, Any]) -> bool:
        conditions = _conditions(filter)
        async with self.db_manager.get_session() as session:
            result = await session.execute(
                select(PositionRecord.id).where(*conditions).order_by(PositionRecord.id).limit(1)
            )
            position_id = result.scalar_one_or_none()
            if position_id is None:
                return False
            updated = await session.execute(
                update(PositionRecord)
                .where(PositionRecord.id == position_id, *conditions)
                .values(**_columns(patch))
            )
            await session.commit()
            return updated.rowcount > 0

    async def count_documents(self, filter: Optional[PositionFilter] = None) -> int:
        async with self.db_manager.get_session() as session:
            result = await session.execute(
                select(func.count()).select_from(PositionRecord).where(*_conditions(filter))
            )
            return int(result.scalar_one())


class SqlHistoryStore(HistoryRepository):
    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    async def record(self, event: HistoryEvent) -> None:
        async with self.db_manager.get_session() as session:
            session.add(HistoryEventRecord(**_columns(event.model_dump())))
            await session.commit()
