"""
Service lifecycle primitives.
"""

from .base_service import BaseService, ServiceStatus

__all__ = ["BaseService", "ServiceStatus"]