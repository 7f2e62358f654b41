from .position_stream import FuturesPositionStream, backoff_delay
from .sweep import ReconciliationSweep

__all__ = ["FuturesPositionStream", "ReconciliationSweep", "backoff_delay"]
