from .client import BinanceFuturesClient, BinanceSpotClient

__all__ = ["BinanceFuturesClient", "BinanceSpotClient"]
