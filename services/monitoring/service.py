from typing import Any, Dict

from core.config.settings import Settings
from core.services.base_service import BaseService
from .models import MonitoringStats
from .monitor import StuckTransferMonitor


class TransferMonitorService(BaseService):
    """Runs the stuck-transfer sweep every `monitoring.check_interval_seconds`."""

    def __init__(self, settings: Settings, monitor: StuckTransferMonitor):
        super().__init__("transfer_monitor_service")
        self.settings = settings
        self.monitor = monitor

    async def _start_implementation(self) -> None:
        if not self.settings.monitoring.enabled:
            self.logger.info("Custodial monitoring service is disabled")
            return
        self._spawn(
            self._run_periodically(self.settings.monitoring.check_interval_seconds, self.monitor.sweep,
                                   "monitor_sweep"),
            name="transfer-monitor-loop",
        )
        self.logger.info("Custodial monitoring service started",
                         check_interval_seconds=self.settings.monitoring.check_interval_seconds,
                         alert_threshold_hours=self.settings.monitoring.alert_threshold_hours)

    async def _stop_implementation(self) -> None:
        pass

    async def get_monitoring_stats(self) -> MonitoringStats:
        return await self.monitor.get_monitoring_stats(is_running=self.is_running())

    def get_status(self) -> Dict[str, Any]:
        status = super().get_status()
        status["last_cycle_time"] = self.monitor.last_cycle_time
        return status
