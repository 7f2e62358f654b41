from .executor import InstrumentExecutor, TaskHandler
from .locks import InstrumentLockRegistry, LockState
from .throttle import JitteredThrottle

__all__ = [
    "InstrumentExecutor",
    "TaskHandler",
    "InstrumentLockRegistry",
    "LockState",
    "JitteredThrottle",
]
