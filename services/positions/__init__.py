from .cache import OpenPositionsCache
from .store import SqlHistoryStore, SqlPositionStore

__all__ = ["OpenPositionsCache", "SqlHistoryStore", "SqlPositionStore"]
