from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class CustodianTransferStatus(str, Enum):
    """Status vocabulary reported by the custodian, aligned with local transfer states."""
    PENDING = "pending"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    SETTLED = "settled"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TransferRequest(BaseModel):
    """Instruction sent to the custodian when a transfer is initiated."""
    transfer_id: str
    trade_id: str
    from_account: str
    to_account: str
    product_id: str
    product_symbol: str
    quantity: int = Field(gt=0)
    price_per_share: Decimal
    instructions: Optional[str] = None


class InitiateResponse(BaseModel):
    transfer_id: str
    custodian_reference: str


class SubmitResponse(BaseModel):
    status: CustodianTransferStatus
    estimated_settlement_date: Optional[datetime] = None
    fees: Optional[Decimal] = None
    message: Optional[str] = None


class StatusResponse(BaseModel):
    status: CustodianTransferStatus
    message: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


class CustodianBalance(BaseModel):
    account: str
    product_symbol: str
    quantity: int
