"""PostgreSQL persistence for broker session tokens."""

from typing import Optional

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert

from core.database.connection import DatabaseManager
from core.database.models import SessionTokenRecord
from core.logging import get_database_logger_safe
from core.trading.interfaces import SessionTokenRepository
from core.trading.models import SessionToken

logger = get_database_logger_safe(__name__)


class SqlSessionTokenRepository(SessionTokenRepository):
    """One row per broker, overwritten in place on renewal."""

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    async def load(self, broker: str) -> Optional[SessionToken]:
        async with self.db_manager.get_session() as session:
            result = await session.execute(
                select(SessionTokenRecord).where(SessionTokenRecord.broker == broker)
            )
            row = result.scalar_one_or_none()
            if row is None:
                return None
            return SessionToken(
                broker=row.broker,
                security_token=row.security_token,
                client_session_token=row.client_session_token,
                issued_at_ms=row.issued_at_ms,
            )

    async def upsert(self, token: SessionToken) -> None:
        async with self.db_manager.get_session() as session:
            stmt = pg_insert(SessionTokenRecord).values(
                broker=token.broker,
                security_token=token.security_token,
                client_session_token=token.client_session_token,
                issued_at_ms=token.issued_at_ms,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=['broker'],
                set_={
                    'security_token': stmt.excluded.security_token,
                    'client_session_token': stmt.excluded.client_session_token,
                    'issued_at_ms': stmt.excluded.issued_at_ms,
                }
            )
            await session.execute(stmt)
            await session.commit()
        logger.debug("Session token upserted", broker=token.broker)
