from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from core.utils.time_utils import utc_now


class TransferStatus(str, Enum):
    PENDING = "pending"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    SETTLED = "settled"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({TransferStatus.SETTLED, TransferStatus.FAILED, TransferStatus.CANCELLED})
OPEN_STATUSES = frozenset({TransferStatus.PENDING, TransferStatus.SUBMITTED, TransferStatus.CONFIRMED})


class TransferAction(str, Enum):
    SUBMIT = "submit"
    CONFIRM = "confirm"
    SETTLE = "settle"
    FAIL = "fail"
    CANCEL = "cancel"


class TransferType(str, Enum):
    BUY = "buy"
    SELL = "sell"
    TRANSFER = "transfer"


class TransferMetadata(BaseModel):
    custodian_name: Optional[str] = None
    account_numbers: Dict[str, str] = Field(default_factory=dict)
    instructions: Optional[str] = None
    fees: Optional[Decimal] = None
    estimated_settlement_date: Optional[datetime] = None


class CustodialTransfer(BaseModel):
    """One transfer per trade, mutated only through the state machine."""
    transfer_id: str
    trade_id: str
    from_user_id: str
    to_user_id: str
    product_id: str
    quantity: int = Field(gt=0)
    transfer_type: TransferType = TransferType.BUY
    status: TransferStatus = TransferStatus.PENDING
    custodian_reference: Optional[str] = None
    metadata: TransferMetadata = Field(default_factory=TransferMetadata)
    failure_reason: Optional[str] = None
    submitted_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    settled_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def can_settle(self) -> bool:
        return self.status == TransferStatus.CONFIRMED


class StepStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class WorkflowStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class WorkflowStep(BaseModel):
    name: str
    status: StepStatus = StepStatus.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None

    def start(self) -> None:
        self.started_at = utc_now()

    def complete(self) -> None:
        self.status = StepStatus.COMPLETED
        self.completed_at = utc_now()

    def fail(self, error: str) -> None:
        self.status = StepStatus.FAILED
        self.completed_at = utc_now()
        self.error = error


class TransferWorkflow(BaseModel):
    """Result of one orchestrator run; returned to callers even on failure."""
    workflow_id: str
    trade_id: str
    transfer_id: Optional[str] = None
    status: WorkflowStatus = WorkflowStatus.RUNNING
    current_step: Optional[str] = None
    steps: List[WorkflowStep] = Field(default_factory=list)
    error: Optional[str] = None
    error_code: Optional[str] = None
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None

    def step(self, name: str) -> WorkflowStep:
        for step in self.steps:
            if step.name == name:
                return step
        raise KeyError(name)


class TransferSummary(BaseModel):
    total_transfers: int = 0
    pending_transfers: int = 0
    completed_transfers: int = 0
    failed_transfers: int = 0
    total_value: Decimal = Decimal("0")
    average_settlement_hours: float = 0.0


class OwnershipVerification(BaseModel):
    user_id: str
    product_id: str
    platform_holdings: int
    register_holdings: int
    custodian_holdings: Optional[int] = None
    is_verified: bool
    discrepancies: List[str] = Field(default_factory=list)


class TransferAuditTrail(BaseModel):
    transfer: CustodialTransfer
    trade: Optional[Dict[str, Any]] = None
    ledger_entries: List[Dict[str, Any]] = Field(default_factory=list)
    workflow_steps: List[WorkflowStep] = Field(default_factory=list)
