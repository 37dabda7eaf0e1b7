from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from core.utils.time_utils import utc_now


class DiscrepancyType(str, Enum):
    PLATFORM_VS_REGISTER = "platform_vs_register"
    REGISTER_VS_CUSTODIAN = "register_vs_custodian"
    PLATFORM_VS_CUSTODIAN = "platform_vs_custodian"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ReconciliationScope(str, Enum):
    FULL = "full"
    USER = "user"
    PRODUCT = "product"


class ReportStatus(str, Enum):
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"


class ReconciliationDiscrepancy(BaseModel):
    """One pairwise mismatch seen in a run. Not persisted."""
    type: DiscrepancyType
    user_id: str
    product_id: str
    platform_quantity: int
    register_quantity: int
    custodian_quantity: int
    difference: int
    severity: Severity
    description: str
    suggested_action: str


class BalanceReconciliation(BaseModel):
    user_id: str
    product_id: str
    platform_balance: int
    register_balance: int
    custodian_balance: int
    is_reconciled: bool
    discrepancy_amount: int
    discrepancy_percentage: Decimal
    last_reconciled: datetime = Field(default_factory=utc_now)


class ReconciliationSummary(BaseModel):
    total_users: int = 0
    total_products: int = 0
    total_holdings: int = 0
    matched_holdings: int = 0
    discrepancies: int = 0
    critical_issues: int = 0
    errors: int = 0


class ReconciliationReport(BaseModel):
    id: str
    report_date: datetime = Field(default_factory=utc_now)
    scope: ReconciliationScope
    scope_id: Optional[str] = None
    summary: ReconciliationSummary = Field(default_factory=ReconciliationSummary)
    discrepancies: List[ReconciliationDiscrepancy] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    status: ReportStatus = ReportStatus.COMPLETED
    execution_time_ms: float = 0.0


class CorrectionAction(str, Enum):
    RESYNC_PORTFOLIO = "resync_portfolio_to_register"
    MANUAL_REVIEW = "manual_review"


class CorrectionOutcome(BaseModel):
    discrepancy: ReconciliationDiscrepancy
    action: CorrectionAction
    applied: bool = False
    target_quantity: Optional[int] = None
    error: Optional[str] = None


class AutoCorrectionResult(BaseModel):
    dry_run: bool
    corrected: List[CorrectionOutcome] = Field(default_factory=list)
    failed: List[CorrectionOutcome] = Field(default_factory=list)
    summary: str = ""
