from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from core.database.models import (
    CustodialTransferRecord,
    TransferWorkflowRecord,
    TransferWorkflowStepRecord,
)
from core.utils.time_utils import as_utc, utc_now
from .models import (
    OPEN_STATUSES,
    CustodialTransfer,
    StepStatus,
    TransferMetadata,
    TransferStatus,
    TransferType,
    TransferWorkflow,
    WorkflowStatus,
    WorkflowStep,
)

DEFAULT_HISTORY_LIMIT = 100


def _metadata_to_json(metadata: TransferMetadata) -> Dict[str, Any]:
    return metadata.model_dump(mode="json", exclude_none=True)


def _to_transfer(record: CustodialTransferRecord) -> CustodialTransfer:
    return CustodialTransfer(
        transfer_id=record.transfer_id,
        trade_id=record.trade_id,
        from_user_id=record.from_user_id,
        to_user_id=record.to_user_id,
        product_id=record.product_id,
        quantity=record.quantity,
        transfer_type=TransferType(record.transfer_type),
        status=TransferStatus(record.status),
        custodian_reference=record.custodian_reference,
        metadata=TransferMetadata.model_validate(record.transfer_metadata or {}),
        failure_reason=record.failure_reason,
        submitted_at=as_utc(record.submitted_at),
        confirmed_at=as_utc(record.confirmed_at),
        settled_at=as_utc(record.settled_at),
        failed_at=as_utc(record.failed_at),
        cancelled_at=as_utc(record.cancelled_at),
        created_at=as_utc(record.created_at),
        updated_at=as_utc(record.updated_at),
    )


class TransferRepository:
    """Persistence for custodial transfers.

    Status changes go through `compare_and_set` only: the UPDATE is
    predicated on the expected current status and reports whether it won.
    """

    async def add(self, session: AsyncSession, transfer: CustodialTransfer) -> CustodialTransfer:
        now = utc_now()
        session.add(CustodialTransferRecord(
            transfer_id=transfer.transfer_id,
            trade_id=transfer.trade_id,
            active_trade_id=None if transfer.is_terminal else transfer.trade_id,
            from_user_id=transfer.from_user_id,
            to_user_id=transfer.to_user_id,
            product_id=transfer.product_id,
            quantity=transfer.quantity,
            transfer_type=transfer.transfer_type.value,
            status=transfer.status.value,
            custodian_reference=transfer.custodian_reference,
            transfer_metadata=_metadata_to_json(transfer.metadata),
            created_at=transfer.created_at or now,
            updated_at=now,
        ))
        await session.flush()
        return await self.get(session, transfer.transfer_id)

    async def get(self, session: AsyncSession, transfer_id: str) -> Optional[CustodialTransfer]:
        record = await session.get(CustodialTransferRecord, transfer_id, populate_existing=True)
        return _to_transfer(record) if record else None

    async def get_active_for_trade(self, session: AsyncSession, trade_id: str) -> Optional[CustodialTransfer]:
        result = await session.execute(
            select(CustodialTransferRecord).where(CustodialTransferRecord.active_trade_id == trade_id)
        )
        record = result.scalar_one_or_none()
        return _to_transfer(record) if record else None

    async def list_for_trade(self, session: AsyncSession, trade_id: str) -> List[CustodialTransfer]:
        result = await session.execute(
            select(CustodialTransferRecord)
            .where(CustodialTransferRecord.trade_id == trade_id)
            .order_by(CustodialTransferRecord.created_at)
        )
        return [_to_transfer(r) for r in result.scalars().all()]

    async def list_open(self, session: AsyncSession) -> List[CustodialTransfer]:
        result = await session.execute(
            select(CustodialTransferRecord)
            .where(CustodialTransferRecord.status.in_([s.value for s in OPEN_STATUSES]))
            .order_by(CustodialTransferRecord.created_at)
        )
        return [_to_transfer(r) for r in result.scalars().all()]

    async def count_by_status(self, session: AsyncSession, status: TransferStatus) -> int:
        result = await session.execute(
            select(func.count()).select_from(CustodialTransferRecord)
            .where(CustodialTransferRecord.status == status.value)
        )
        return int(result.scalar_one())

    async def history(self, session: AsyncSession, user_id: Optional[str] = None,
                      product_id: Optional[str] = None,
                      limit: int = DEFAULT_HISTORY_LIMIT) -> List[CustodialTransfer]:
        """Transfers where the user is on either side, newest first."""
        stmt = select(CustodialTransferRecord)
        if user_id is not None:
            stmt = stmt.where(or_(CustodialTransferRecord.from_user_id == user_id,
                                  CustodialTransferRecord.to_user_id == user_id))
        if product_id is not None:
            stmt = stmt.where(CustodialTransferRecord.product_id == product_id)
        stmt = stmt.order_by(CustodialTransferRecord.created_at.desc()).limit(limit)
        return [_to_transfer(r) for r in (await session.execute(stmt)).scalars().all()]

    async def list_between(self, session: AsyncSession, start: Optional[datetime] = None,
                           end: Optional[datetime] = None,
                           product_id: Optional[str] = None) -> List[CustodialTransfer]:
        stmt = select(CustodialTransferRecord)
        if start is not None:
            stmt = stmt.where(CustodialTransferRecord.created_at >= start)
        if end is not None:
            stmt = stmt.where(CustodialTransferRecord.created_at <= end)
        if product_id is not None:
            stmt = stmt.where(CustodialTransferRecord.product_id == product_id)
        return [_to_transfer(r) for r in (await session.execute(stmt)).scalars().all()]

    async def compare_and_set(self, session: AsyncSession, transfer_id: str,
                              expected: TransferStatus, new_status: TransferStatus,
                              **values) -> bool:
        """Move `expected` -> `new_status`; False when another writer got there first."""
        values = dict(values)
        values["status"] = new_status.value
        values["updated_at"] = utc_now()
        if new_status.is_terminal:
            values["active_trade_id"] = None
        result = await session.execute(
            update(CustodialTransferRecord)
            .where(CustodialTransferRecord.transfer_id == transfer_id,
                   CustodialTransferRecord.status == expected.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def set_reference(self, session: AsyncSession, transfer_id: str, custodian_reference: str) -> None:
        await session.execute(
            update(CustodialTransferRecord)
            .where(CustodialTransferRecord.transfer_id == transfer_id)
            .values(custodian_reference=custodian_reference, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )

    async def update_metadata(self, session: AsyncSession, transfer_id: str, **changes) -> None:
        record = await session.get(CustodialTransferRecord, transfer_id, populate_existing=True)
        if record is None:
            return
        metadata = TransferMetadata.model_validate(record.transfer_metadata or {})
        merged = metadata.model_copy(update=changes)
        record.transfer_metadata = _metadata_to_json(merged)
        record.updated_at = utc_now()
        await session.flush()


class WorkflowRepository:
    """Step-level persistence of orchestrator runs."""

    async def save(self, session: AsyncSession, workflow: TransferWorkflow) -> None:
        record = await session.get(TransferWorkflowRecord, workflow.workflow_id)
        if record is None:
            record = TransferWorkflowRecord(workflow_id=workflow.workflow_id, trade_id=workflow.trade_id,
                                            started_at=workflow.started_at)
            session.add(record)
        record.transfer_id = workflow.transfer_id
        record.status = workflow.status.value
        record.current_step = workflow.current_step
        record.error = workflow.error
        record.error_code = workflow.error_code
        record.completed_at = workflow.completed_at
        await session.flush()

        await session.execute(
            delete(TransferWorkflowStepRecord).where(TransferWorkflowStepRecord.workflow_id == workflow.workflow_id)
        )
        for position, step in enumerate(workflow.steps):
            session.add(TransferWorkflowStepRecord(
                workflow_id=workflow.workflow_id, position=position, name=step.name,
                status=step.status.value, started_at=step.started_at,
                completed_at=step.completed_at, error=step.error,
            ))
        await session.flush()

    async def latest_for_transfer(self, session: AsyncSession, transfer_id: str) -> Optional[TransferWorkflow]:
        result = await session.execute(
            select(TransferWorkflowRecord)
            .where(TransferWorkflowRecord.transfer_id == transfer_id)
            .order_by(TransferWorkflowRecord.started_at.desc())
            .limit(1)
        )
        record = result.scalar_one_or_none()
        return await self._load(session, record) if record else None

    async def _load(self, session: AsyncSession, record: TransferWorkflowRecord) -> TransferWorkflow:
        steps = (await session.execute(
            select(TransferWorkflowStepRecord)
            .where(TransferWorkflowStepRecord.workflow_id == record.workflow_id)
            .order_by(TransferWorkflowStepRecord.position)
        )).scalars().all()
        return TransferWorkflow(
            workflow_id=record.workflow_id,
            trade_id=record.trade_id,
            transfer_id=record.transfer_id,
            status=WorkflowStatus(record.status),
            current_step=record.current_step,
            error=record.error,
            error_code=record.error_code,
            started_at=as_utc(record.started_at),
            completed_at=as_utc(record.completed_at),
            steps=[
                WorkflowStep(name=s.name, status=StepStatus(s.status), started_at=as_utc(s.started_at),
                             completed_at=as_utc(s.completed_at), error=s.error)
                for s in steps
            ],
        )
