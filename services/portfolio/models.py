from pydantic import BaseModel, Field
from typing import Dict, Optional
from datetime import datetime
from decimal import Decimal


class Holding(BaseModel):
    """
    A single product position in a user's portfolio.
    """
    product_id: str
    quantity: int = 0
    average_cost: Decimal = Decimal("0")
    cost_basis: Decimal = Decimal("0")


class Portfolio(BaseModel):
    """
    Cached per-user view of ledger holdings. Never consulted for transfer
    eligibility; the share ledger is authoritative.
    """
    user_id: str
    holdings: Dict[str, Holding] = Field(default_factory=dict)
    total_realized_pnl: Decimal = Decimal("0")
    updated_at: Optional[datetime] = None

    def quantity_of(self, product_id: str) -> int:
        holding = self.holdings.get(product_id)
        return holding.quantity if holding else 0

    @property
    def total_cost_basis(self) -> Decimal:
        return sum((h.cost_basis for h in self.holdings.values()), Decimal("0"))
