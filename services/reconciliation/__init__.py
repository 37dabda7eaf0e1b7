from .engine import ReconciliationEngine, build_recommendations, classify_severity, difference_percentage
from .models import (
    AutoCorrectionResult,
    BalanceReconciliation,
    CorrectionAction,
    CorrectionOutcome,
    DiscrepancyType,
    ReconciliationDiscrepancy,
    ReconciliationReport,
    ReconciliationScope,
    ReconciliationSummary,
    ReportStatus,
    Severity,
)
from .service import ReconciliationService

__all__ = [
    "AutoCorrectionResult",
    "BalanceReconciliation",
    "CorrectionAction",
    "CorrectionOutcome",
    "DiscrepancyType",
    "ReconciliationDiscrepancy",
    "ReconciliationEngine",
    "ReconciliationReport",
    "ReconciliationScope",
    "ReconciliationService",
    "ReconciliationSummary",
    "ReportStatus",
    "Severity",
    "build_recommendations",
    "classify_severity",
    "difference_percentage",
]
