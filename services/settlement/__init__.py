from .resolver import SettlementResolver, aggregate_trades

__all__ = ["SettlementResolver", "aggregate_trades"]
