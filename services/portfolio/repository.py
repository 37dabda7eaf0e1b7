from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.database.models import PortfolioHoldingRecord, PortfolioRecord
from core.logging import get_settlement_logger_safe
from core.utils.exceptions import PortfolioStateError
from core.utils.time_utils import as_utc, utc_now
from .models import Holding, Portfolio


class PortfolioStore:
    """Persists per-user portfolios; all mutations run inside the caller's session."""

    def __init__(self):
        self.logger = get_settlement_logger_safe("portfolio_store")

    async def get(self, session: AsyncSession, user_id: str) -> Portfolio:
        header = await session.get(PortfolioRecord, user_id)
        rows = (await session.execute(
            select(PortfolioHoldingRecord).where(PortfolioHoldingRecord.user_id == user_id)
        )).scalars().all()
        return Portfolio(
            user_id=user_id,
            holdings={row.product_id: self._to_holding(row) for row in rows},
            total_realized_pnl=Decimal(str(header.total_realized_pnl)) if header else Decimal("0"),
            updated_at=as_utc(header.updated_at) if header else None,
        )

    async def quantity(self, session: AsyncSession, user_id: str, product_id: str) -> int:
        row = await self._holding(session, user_id, product_id)
        return row.quantity if row else 0

    async def add_holding(self, session: AsyncSession, user_id: str, product_id: str,
                          quantity: int, price: Decimal) -> Holding:
        """Increase a holding, folding the price into a weighted average cost."""
        if quantity <= 0:
            raise ValueError("Quantity must be positive")
        await self._ensure_portfolio(session, user_id)
        row = await self._holding(session, user_id, product_id, for_update=True)
        price = Decimal(str(price))
        if row is None:
            row = PortfolioHoldingRecord(
                user_id=user_id, product_id=product_id, quantity=quantity,
                average_cost=price, cost_basis=price * quantity,
            )
            session.add(row)
        else:
            new_quantity = row.quantity + quantity
            new_basis = Decimal(str(row.cost_basis)) + price * quantity
            row.quantity = new_quantity
            row.cost_basis = new_basis
            row.average_cost = new_basis / new_quantity
            row.updated_at = utc_now()
        await session.flush()
        return self._to_holding(row)

    async def remove_holding(self, session: AsyncSession, user_id: str, product_id: str,
                             quantity: int, price: Decimal) -> Decimal:
        """Decrease a holding and return the realized P&L of the sale.

        Raises PortfolioStateError when the cached holding cannot cover the
        sale; inside a settlement this rolls the whole unit back.
        """
        if quantity <= 0:
            raise ValueError("Quantity must be positive")
        row = await self._holding(session, user_id, product_id, for_update=True)
        held = row.quantity if row else 0
        if held < quantity:
            raise PortfolioStateError(
                f"Portfolio of {user_id} holds {held} of {product_id}, cannot remove {quantity}",
                user_id=user_id, product_id=product_id,
                details={"held": held, "requested": quantity},
            )
        average_cost = Decimal(str(row.average_cost))
        realized = (Decimal(str(price)) - average_cost) * quantity
        remaining = held - quantity
        if remaining == 0:
            await session.delete(row)
        else:
            row.quantity = remaining
            row.cost_basis = average_cost * remaining
            row.updated_at = utc_now()

        header = await self._ensure_portfolio(session, user_id)
        header.total_realized_pnl = Decimal(str(header.total_realized_pnl)) + realized
        header.updated_at = utc_now()
        await session.flush()
        return realized

    async def apply_settlement(self, session: AsyncSession, seller_id: str, buyer_id: str,
                               product_id: str, quantity: int, price: Decimal) -> Decimal:
        """Seller decrement and buyer increment for one settled transfer."""
        realized = await self.remove_holding(session, seller_id, product_id, quantity, price)
        await self.add_holding(session, buyer_id, product_id, quantity, price)
        self.logger.info("Portfolios updated for settlement", seller_id=seller_id, buyer_id=buyer_id,
                         product_id=product_id, quantity=quantity, realized_pnl=str(realized))
        return realized

    async def set_quantity(self, session: AsyncSession, user_id: str, product_id: str,
                           quantity: int) -> None:
        """Overwrite a cached quantity (reconciliation resync); keeps the average cost."""
        if quantity < 0:
            raise ValueError("Quantity cannot be negative")
        row = await self._holding(session, user_id, product_id, for_update=True)
        if quantity == 0:
            if row is not None:
                await session.delete(row)
        elif row is None:
            await self._ensure_portfolio(session, user_id)
            session.add(PortfolioHoldingRecord(
                user_id=user_id, product_id=product_id, quantity=quantity,
                average_cost=Decimal("0"), cost_basis=Decimal("0"),
            ))
        else:
            average_cost = Decimal(str(row.average_cost))
            row.quantity = quantity
            row.cost_basis = average_cost * quantity
            row.updated_at = utc_now()
        await session.flush()

    async def list_user_ids(self, session: AsyncSession) -> List[str]:
        result = await session.execute(select(PortfolioRecord.user_id).order_by(PortfolioRecord.user_id))
        return list(result.scalars().all())

    async def holding_pairs(self, session: AsyncSession,
                            user_id: Optional[str] = None,
                            product_id: Optional[str] = None) -> List[Tuple[str, str]]:
        stmt = select(PortfolioHoldingRecord.user_id, PortfolioHoldingRecord.product_id)
        if user_id is not None:
            stmt = stmt.where(PortfolioHoldingRecord.user_id == user_id)
        if product_id is not None:
            stmt = stmt.where(PortfolioHoldingRecord.product_id == product_id)
        return [(u, p) for u, p in (await session.execute(stmt)).all()]

    async def _ensure_portfolio(self, session: AsyncSession, user_id: str) -> PortfolioRecord:
        header = await session.get(PortfolioRecord, user_id)
        if header is None:
            header = PortfolioRecord(user_id=user_id, total_realized_pnl=Decimal("0"))
            session.add(header)
            await session.flush()
        return header

    async def _holding(self, session: AsyncSession, user_id: str, product_id: str,
                       for_update: bool = False) -> Optional[PortfolioHoldingRecord]:
        stmt = select(PortfolioHoldingRecord).where(
            PortfolioHoldingRecord.user_id == user_id,
            PortfolioHoldingRecord.product_id == product_id,
        )
        if for_update:
            stmt = stmt.with_for_update()
        return (await session.execute(stmt)).scalar_one_or_none()

    @staticmethod
    def _to_holding(row: PortfolioHoldingRecord) -> Holding:
        return Holding(
            product_id=row.product_id,
            quantity=row.quantity,
            average_cost=Decimal(str(row.average_cost)),
            cost_basis=Decimal(str(row.cost_basis)),
        )
