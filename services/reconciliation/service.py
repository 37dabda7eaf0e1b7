from collections import deque
from typing import Deque, List, Optional

from core.config.settings import Settings
from core.services.base_service import BaseService
from .engine import ReconciliationEngine
from .models import AutoCorrectionResult, ReconciliationReport


class ReconciliationService(BaseService):
    """Runs the full reconciliation on an interval and keeps recent reports in memory."""

    def __init__(self, settings: Settings, engine: ReconciliationEngine):
        super().__init__("reconciliation_service")
        self.settings = settings
        self.engine = engine
        self._reports: Deque[ReconciliationReport] = deque(maxlen=settings.reconciliation.report_history_size)
        self.last_correction: Optional[AutoCorrectionResult] = None

    async def _start_implementation(self) -> None:
        if not self.settings.reconciliation.enabled:
            self.logger.info("Scheduled reconciliation disabled")
            return
        self._spawn(
            self._run_periodically(self.settings.reconciliation.interval_seconds, self.run_once,
                                   "full_reconciliation"),
            name="reconciliation-loop",
        )

    async def _stop_implementation(self) -> None:
        pass

    async def run_once(self) -> ReconciliationReport:
        """One full run followed by an auto-correction pass (live only if enabled)."""
        report = await self.engine.full_reconciliation()
        self.record(report)
        if report.discrepancies:
            self.last_correction = await self.engine.auto_correct(
                report.discrepancies, dry_run=not self.settings.reconciliation.auto_correct_enabled,
            )
        return report

    def record(self, report: ReconciliationReport) -> None:
        self._reports.append(report)

    def recent_reports(self, limit: Optional[int] = None) -> List[ReconciliationReport]:
        reports = list(reversed(self._reports))
        return reports[:limit] if limit else reports

    def latest_report(self) -> Optional[ReconciliationReport]:
        return self._reports[-1] if self._reports else None
