from collections import defaultdict
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.database.models import LedgerEntryRecord, LedgerTransferHistoryRecord
from core.logging import get_settlement_logger_safe
from core.utils.exceptions import InsufficientSharesError
from core.utils.time_utils import as_utc, utc_now
from .models import LedgerEntry, LedgerEntryStatus, LedgerTransferResult, TransferHistoryItem


class ShareLedger:
    """
    Authoritative share register.

    Every mutating call takes the caller's session and never commits: the
    caller's unit of work decides whether a transfer and its sibling
    portfolio update land together.
    """

    def __init__(self):
        self.logger = get_settlement_logger_safe("share_ledger")

    async def issue(self, session: AsyncSession, owner_id: str, product_id: str, quantity: int,
                    acquisition_price: Decimal = Decimal("0")) -> LedgerEntry:
        """Record a first acquisition (issuance or primary purchase)."""
        if quantity <= 0:
            raise ValueError("Issued quantity must be positive")
        record = LedgerEntryRecord(
            owner_id=owner_id,
            product_id=product_id,
            quantity=quantity,
            status=LedgerEntryStatus.ACTIVE.value,
            acquisition_price=acquisition_price,
            acquired_at=utc_now(),
        )
        session.add(record)
        await session.flush()
        self.logger.info("Shares issued", owner_id=owner_id, product_id=product_id, quantity=quantity)
        return self._to_entry(record, [])

    async def balance(self, session: AsyncSession, owner_id: str, product_id: str) -> int:
        """Sum of active quantities for (owner, product)."""
        result = await session.execute(
            select(func.coalesce(func.sum(LedgerEntryRecord.quantity), 0)).where(
                LedgerEntryRecord.owner_id == owner_id,
                LedgerEntryRecord.product_id == product_id,
                LedgerEntryRecord.status == LedgerEntryStatus.ACTIVE.value,
            )
        )
        return int(result.scalar_one())

    async def transfer(self, session: AsyncSession, from_owner: str, to_owner: str, product_id: str,
                       quantity: int, transfer_ref: str,
                       price_per_share: Optional[Decimal] = None) -> LedgerTransferResult:
        """Move shares between holders inside the caller's transaction.

        Source lots are drained oldest first; a lot that reaches zero is
        marked transferred. Each touched lot, and the destination lot, gets
        a history record for `transfer_ref`.
        """
        if quantity <= 0:
            raise ValueError("Transfer quantity must be positive")
        if from_owner == to_owner:
            raise ValueError("Source and destination holders must differ")

        source_lots = await self._active_lots(session, from_owner, product_id, for_update=True)
        available = sum(lot.quantity for lot in source_lots)
        if available < quantity:
            raise InsufficientSharesError(
                f"Holder {from_owner} has {available} active shares of {product_id}, {quantity} requested",
                owner_id=from_owner, product_id=product_id,
                requested=quantity, available=available,
            )

        now = utc_now()
        remaining = quantity
        touched: List[int] = []
        weighted_cost = Decimal("0")
        for lot in source_lots:
            if remaining == 0:
                break
            take = min(lot.quantity, remaining)
            lot.quantity -= take
            remaining -= take
            weighted_cost += Decimal(str(lot.acquisition_price)) * take
            if lot.quantity == 0:
                lot.status = LedgerEntryStatus.TRANSFERRED.value
            lot.updated_at = now
            touched.append(lot.id)
            session.add(LedgerTransferHistoryRecord(
                entry_id=lot.id, transfer_id=transfer_ref, from_id=from_owner,
                to_id=to_owner, quantity=take, timestamp=now,
            ))

        acquisition_price = price_per_share if price_per_share is not None else weighted_cost / quantity
        destination = await self._active_lots(session, to_owner, product_id, for_update=True)
        if destination:
            lot = destination[0]
            existing_cost = Decimal(str(lot.acquisition_price)) * lot.quantity
            lot.acquisition_price = (existing_cost + acquisition_price * quantity) / (lot.quantity + quantity)
            lot.quantity += quantity
            lot.updated_at = now
        else:
            lot = LedgerEntryRecord(
                owner_id=to_owner, product_id=product_id, quantity=quantity,
                status=LedgerEntryStatus.ACTIVE.value,
                acquisition_price=acquisition_price, acquired_at=now,
            )
            session.add(lot)
            await session.flush()
        touched.append(lot.id)
        session.add(LedgerTransferHistoryRecord(
            entry_id=lot.id, transfer_id=transfer_ref, from_id=from_owner,
            to_id=to_owner, quantity=quantity, timestamp=now,
        ))
        await session.flush()

        result = LedgerTransferResult(
            transfer_ref=transfer_ref,
            from_owner=from_owner,
            to_owner=to_owner,
            product_id=product_id,
            quantity=quantity,
            from_balance=available - quantity,
            to_balance=await self.balance(session, to_owner, product_id),
            touched_entry_ids=touched,
        )
        self.logger.info("Ledger transfer applied", transfer_ref=transfer_ref, from_owner=from_owner,
                         to_owner=to_owner, product_id=product_id, quantity=quantity,
                         from_balance=result.from_balance, to_balance=result.to_balance)
        return result

    async def entries(self, session: AsyncSession, owner_id: Optional[str] = None,
                      product_id: Optional[str] = None,
                      include_transferred: bool = False) -> List[LedgerEntry]:
        stmt = select(LedgerEntryRecord)
        if owner_id is not None:
            stmt = stmt.where(LedgerEntryRecord.owner_id == owner_id)
        if product_id is not None:
            stmt = stmt.where(LedgerEntryRecord.product_id == product_id)
        if not include_transferred:
            stmt = stmt.where(LedgerEntryRecord.status == LedgerEntryStatus.ACTIVE.value)
        records = (await session.execute(stmt.order_by(LedgerEntryRecord.id))).scalars().all()
        return await self._with_history(session, records)

    async def entries_for_transfer(self, session: AsyncSession, transfer_ref: str) -> List[LedgerEntry]:
        """Ledger lots touched by a given transfer, with their full history."""
        entry_ids = select(LedgerTransferHistoryRecord.entry_id).where(
            LedgerTransferHistoryRecord.transfer_id == transfer_ref
        )
        records = (await session.execute(
            select(LedgerEntryRecord).where(LedgerEntryRecord.id.in_(entry_ids)).order_by(LedgerEntryRecord.id)
        )).scalars().all()
        return await self._with_history(session, records)

    async def holdings_by_owner(self, session: AsyncSession, owner_id: str) -> Dict[str, int]:
        """product_id -> active quantity for one holder."""
        result = await session.execute(
            select(LedgerEntryRecord.product_id, func.sum(LedgerEntryRecord.quantity))
            .where(LedgerEntryRecord.owner_id == owner_id,
                   LedgerEntryRecord.status == LedgerEntryStatus.ACTIVE.value)
            .group_by(LedgerEntryRecord.product_id)
        )
        return {product_id: int(qty or 0) for product_id, qty in result.all()}

    async def owners_of(self, session: AsyncSession, product_id: str) -> List[str]:
        result = await session.execute(
            select(LedgerEntryRecord.owner_id)
            .where(LedgerEntryRecord.product_id == product_id,
                   LedgerEntryRecord.status == LedgerEntryStatus.ACTIVE.value)
            .distinct()
            .order_by(LedgerEntryRecord.owner_id)
        )
        return list(result.scalars().all())

    async def total_active(self, session: AsyncSession, product_id: str) -> int:
        result = await session.execute(
            select(func.coalesce(func.sum(LedgerEntryRecord.quantity), 0)).where(
                LedgerEntryRecord.product_id == product_id,
                LedgerEntryRecord.status == LedgerEntryStatus.ACTIVE.value,
            )
        )
        return int(result.scalar_one())

    async def _active_lots(self, session: AsyncSession, owner_id: str, product_id: str,
                           for_update: bool = False) -> List[LedgerEntryRecord]:
        stmt = (
            select(LedgerEntryRecord)
            .where(LedgerEntryRecord.owner_id == owner_id,
                   LedgerEntryRecord.product_id == product_id,
                   LedgerEntryRecord.status == LedgerEntryStatus.ACTIVE.value)
            .order_by(LedgerEntryRecord.acquired_at, LedgerEntryRecord.id)
        )
        if for_update:
            stmt = stmt.with_for_update()
        return list((await session.execute(stmt)).scalars().all())

    async def _with_history(self, session: AsyncSession, records) -> List[LedgerEntry]:
        if not records:
            return []
        history_rows = (await session.execute(
            select(LedgerTransferHistoryRecord)
            .where(LedgerTransferHistoryRecord.entry_id.in_([r.id for r in records]))
            .order_by(LedgerTransferHistoryRecord.id)
        )).scalars().all()
        by_entry = defaultdict(list)
        for row in history_rows:
            by_entry[row.entry_id].append(row)
        return [self._to_entry(r, by_entry[r.id]) for r in records]

    @staticmethod
    def _to_entry(record: LedgerEntryRecord, history) -> LedgerEntry:
        return LedgerEntry(
            entry_id=record.id,
            owner_id=record.owner_id,
            product_id=record.product_id,
            quantity=record.quantity,
            status=LedgerEntryStatus(record.status),
            acquisition_price=Decimal(str(record.acquisition_price)),
            acquired_at=as_utc(record.acquired_at),
            transfer_history=[
                TransferHistoryItem(
                    transfer_id=h.transfer_id, from_id=h.from_id, to_id=h.to_id,
                    quantity=h.quantity, timestamp=as_utc(h.timestamp),
                )
                for h in history
            ],
        )
