from .models import MonitorCycleResult, MonitoringStats
from .monitor import StuckTransferMonitor
from .service import TransferMonitorService

__all__ = ["MonitorCycleResult", "MonitoringStats", "StuckTransferMonitor", "TransferMonitorService"]
