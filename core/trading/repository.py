from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from core.database.models import ProductRecord, TradeRecord
from core.utils.time_utils import as_utc, utc_now
from .models import Product, ProductStatus, Trade, TradeStatus


def _to_trade(record: TradeRecord) -> Trade:
    return Trade(
        trade_id=record.trade_id,
        buyer_id=record.buyer_id,
        seller_id=record.seller_id,
        product_id=record.product_id,
        quantity=record.quantity,
        price_per_share=Decimal(str(record.price_per_share)),
        status=TradeStatus(record.status),
        custodial_transfer_id=record.custodial_transfer_id,
        failure_reason=record.failure_reason,
        executed_at=as_utc(record.executed_at),
        settled_at=as_utc(record.settled_at),
    )


def _to_product(record: ProductRecord) -> Product:
    return Product(
        product_id=record.product_id,
        symbol=record.symbol,
        name=record.name,
        status=ProductStatus(record.status),
        total_shares=record.total_shares,
        price_per_share=Decimal(str(record.price_per_share)),
    )


class TradeRepository:
    """Trade rows shared with the trading layer; settlement only moves status."""

    async def add(self, session: AsyncSession, trade: Trade) -> Trade:
        session.add(TradeRecord(
            trade_id=trade.trade_id,
            buyer_id=trade.buyer_id,
            seller_id=trade.seller_id,
            product_id=trade.product_id,
            quantity=trade.quantity,
            price_per_share=trade.price_per_share,
            status=trade.status.value,
            custodial_transfer_id=trade.custodial_transfer_id,
            executed_at=trade.executed_at,
        ))
        await session.flush()
        return trade

    async def get(self, session: AsyncSession, trade_id: str) -> Optional[Trade]:
        record = await session.get(TradeRecord, trade_id, populate_existing=True)
        return _to_trade(record) if record else None

    async def attach_transfer(self, session: AsyncSession, trade_id: str, transfer_id: str) -> None:
        await session.execute(
            update(TradeRecord)
            .where(TradeRecord.trade_id == trade_id)
            .values(custodial_transfer_id=transfer_id, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )

    async def mark_settled(self, session: AsyncSession, trade_id: str) -> bool:
        """pending -> settled; returns False if the trade was not pending."""
        result = await session.execute(
            update(TradeRecord)
            .where(TradeRecord.trade_id == trade_id, TradeRecord.status == TradeStatus.PENDING.value)
            .values(status=TradeStatus.SETTLED.value, settled_at=utc_now(), updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def mark_failed(self, session: AsyncSession, trade_id: str, reason: str) -> bool:
        """Fail a trade unless it already settled; returns whether a row changed."""
        result = await session.execute(
            update(TradeRecord)
            .where(TradeRecord.trade_id == trade_id, TradeRecord.status == TradeStatus.PENDING.value)
            .values(status=TradeStatus.FAILED.value, failure_reason=reason[:500], updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def list_failed_with_transfer(self, session: AsyncSession) -> List[Trade]:
        result = await session.execute(
            select(TradeRecord).where(
                TradeRecord.status == TradeStatus.FAILED.value,
                TradeRecord.custodial_transfer_id.is_not(None),
            )
        )
        return [_to_trade(r) for r in result.scalars().all()]

    async def get_many(self, session: AsyncSession, trade_ids: List[str]) -> List[Trade]:
        if not trade_ids:
            return []
        result = await session.execute(select(TradeRecord).where(TradeRecord.trade_id.in_(trade_ids)))
        return [_to_trade(r) for r in result.scalars().all()]


class ProductRepository:
    async def add(self, session: AsyncSession, product: Product) -> Product:
        session.add(ProductRecord(
            product_id=product.product_id,
            symbol=product.symbol,
            name=product.name,
            status=product.status.value,
            total_shares=product.total_shares,
            price_per_share=product.price_per_share,
        ))
        await session.flush()
        return product

    async def get(self, session: AsyncSession, product_id: str) -> Optional[Product]:
        record = await session.get(ProductRecord, product_id)
        return _to_product(record) if record else None

    async def list_active(self, session: AsyncSession) -> List[Product]:
        result = await session.execute(
            select(ProductRecord)
            .where(ProductRecord.status == ProductStatus.ACTIVE.value)
            .order_by(ProductRecord.symbol)
        )
        return [_to_product(r) for r in result.scalars().all()]
