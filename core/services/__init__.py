"""
Core services module for the trade gateway.
"""

from .base_service import BaseService, ServiceStatus

__all__ = ["BaseService", "ServiceStatus"]
