from .client import CapitalClient

__all__ = ["CapitalClient"]
