from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from core.utils.exceptions import TradeStateError
from core.utils.ids import generate_entity_id
from core.utils.time_utils import utc_now


class TradeStatus(str, Enum):
    PENDING = "pending"
    SETTLED = "settled"
    FAILED = "failed"


class ProductStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    DELISTED = "delisted"


class Trade(BaseModel):
    """
    Executed trade as produced by the trading layer.

    Settlement only reads the economic fields and moves `status` /
    `custodial_transfer_id`.
    """
    trade_id: str = Field(default_factory=generate_entity_id)
    buyer_id: str
    seller_id: str
    product_id: str
    quantity: int = Field(gt=0)
    price_per_share: Decimal = Field(gt=0)
    status: TradeStatus = TradeStatus.PENDING
    custodial_transfer_id: Optional[str] = None
    failure_reason: Optional[str] = None
    executed_at: datetime = Field(default_factory=utc_now)
    settled_at: Optional[datetime] = None

    @property
    def total_amount(self) -> Decimal:
        return self.price_per_share * self.quantity

    def can_settle(self) -> bool:
        return self.status == TradeStatus.PENDING

    def settle(self) -> None:
        if not self.can_settle():
            raise TradeStateError(f"Trade {self.trade_id} cannot be settled from {self.status.value}",
                                  trade_id=self.trade_id, status=self.status.value)
        self.status = TradeStatus.SETTLED
        self.settled_at = utc_now()

    def fail(self, reason: str) -> None:
        if self.status == TradeStatus.SETTLED:
            raise TradeStateError(f"Cannot fail settled trade {self.trade_id}",
                                  trade_id=self.trade_id, status=self.status.value)
        self.status = TradeStatus.FAILED
        self.failure_reason = reason[:500]


class Product(BaseModel):
    product_id: str = Field(default_factory=generate_entity_id)
    symbol: str
    name: str
    status: ProductStatus = ProductStatus.ACTIVE
    total_shares: int = Field(default=0, ge=0)
    price_per_share: Decimal = Decimal("0")
