from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class LedgerEntryStatus(str, Enum):
    ACTIVE = "active"
    TRANSFERRED = "transferred"


class TransferHistoryItem(BaseModel):
    transfer_id: str
    from_id: str
    to_id: str
    quantity: int
    timestamp: datetime


class LedgerEntry(BaseModel):
    """
    One lot in the share register. Entries are never deleted; a fully
    drained lot is marked transferred and keeps its history.
    """
    entry_id: int
    owner_id: str
    product_id: str
    quantity: int = Field(ge=0)
    status: LedgerEntryStatus = LedgerEntryStatus.ACTIVE
    acquisition_price: Decimal = Decimal("0")
    acquired_at: Optional[datetime] = None
    transfer_history: List[TransferHistoryItem] = Field(default_factory=list)


class LedgerTransferResult(BaseModel):
    transfer_ref: str
    from_owner: str
    to_owner: str
    product_id: str
    quantity: int
    from_balance: int
    to_balance: int
    touched_entry_ids: List[int] = Field(default_factory=list)
