from .engine import DASHBOARD_EVENT, PositionLifecycleEngine, realized_pnl
from .notifier import RedisNotificationSink
from .venues import BinanceFuturesVenue, BinanceSpotVenue, CapitalVenue, Venue

__all__ = [
    "DASHBOARD_EVENT",
    "PositionLifecycleEngine",
    "realized_pnl",
    "RedisNotificationSink",
    "BinanceFuturesVenue",
    "BinanceSpotVenue",
    "CapitalVenue",
    "Venue",
]
