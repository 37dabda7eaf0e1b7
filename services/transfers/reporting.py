from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from core.database.connection import DatabaseManager
from core.trading.repository import TradeRepository
from core.utils.exceptions import TransferNotFoundError
from core.utils.time_utils import hours_between
from services.ledger.repository import ShareLedger
from .models import (
    OPEN_STATUSES,
    CustodialTransfer,
    StepStatus,
    TransferAuditTrail,
    TransferStatus,
    TransferSummary,
    WorkflowStep,
)
from .orchestrator import STEP_CONFIRM, STEP_INITIATE, STEP_SUBMIT, STEP_VALIDATE
from .repository import DEFAULT_HISTORY_LIMIT, TransferRepository, WorkflowRepository
from .state_machine import SETTLEMENT_PHASES


class TransferReporting:
    """Read-only views over transfers: summary, history and audit trail."""

    def __init__(self, db_manager: DatabaseManager, transfers: TransferRepository,
                 workflows: WorkflowRepository, trades: TradeRepository, ledger: ShareLedger):
        self.db_manager = db_manager
        self.transfers = transfers
        self.workflows = workflows
        self.trades = trades
        self.ledger = ledger

    async def get_transfer(self, transfer_id: str) -> CustodialTransfer:
        async with self.db_manager.get_session() as session:
            transfer = await self.transfers.get(session, transfer_id)
        if transfer is None:
            raise TransferNotFoundError(f"Transfer {transfer_id} not found", transfer_id=transfer_id)
        return transfer

    async def history(self, user_id: Optional[str] = None, product_id: Optional[str] = None,
                      limit: int = DEFAULT_HISTORY_LIMIT) -> List[CustodialTransfer]:
        async with self.db_manager.get_session() as session:
            return await self.transfers.history(session, user_id=user_id, product_id=product_id, limit=limit)

    async def summary(self, start_date: Optional[datetime] = None, end_date: Optional[datetime] = None,
                      product_id: Optional[str] = None) -> TransferSummary:
        async with self.db_manager.get_session() as session:
            transfers = await self.transfers.list_between(session, start_date, end_date, product_id)
            trades = await self.trades.get_many(session, list({t.trade_id for t in transfers}))
        trade_values = {trade.trade_id: trade.total_amount for trade in trades}

        settled = [t for t in transfers if t.status == TransferStatus.SETTLED and t.settled_at]
        average_hours = (
            sum(hours_between(t.created_at, t.settled_at) for t in settled) / len(settled)
            if settled else 0.0
        )
        return TransferSummary(
            total_transfers=len(transfers),
            pending_transfers=sum(1 for t in transfers if t.status in OPEN_STATUSES),
            completed_transfers=sum(1 for t in transfers if t.status == TransferStatus.SETTLED),
            failed_transfers=sum(1 for t in transfers if t.status == TransferStatus.FAILED),
            total_value=sum((trade_values.get(t.trade_id, Decimal("0")) for t in transfers), Decimal("0")),
            average_settlement_hours=average_hours,
        )

    async def audit_trail(self, transfer_id: str) -> TransferAuditTrail:
        async with self.db_manager.get_session() as session:
            transfer = await self.transfers.get(session, transfer_id)
            if transfer is None:
                raise TransferNotFoundError(f"Transfer {transfer_id} not found", transfer_id=transfer_id)
            trade = await self.trades.get(session, transfer.trade_id)
            entries = await self.ledger.entries_for_transfer(session, transfer_id)
            workflow = await self.workflows.latest_for_transfer(session, transfer_id)

        steps = workflow.steps if workflow else reconstruct_steps(transfer)
        return TransferAuditTrail(
            transfer=transfer,
            trade=trade.model_dump(mode="json") if trade else None,
            ledger_entries=[e.model_dump(mode="json") for e in entries],
            workflow_steps=steps,
        )


def reconstruct_steps(transfer: CustodialTransfer) -> List[WorkflowStep]:
    """Best-effort step list from a transfer's own timestamps."""
    steps = [
        WorkflowStep(name=STEP_VALIDATE, status=StepStatus.COMPLETED, completed_at=transfer.created_at),
        WorkflowStep(name=STEP_INITIATE, status=StepStatus.COMPLETED, completed_at=transfer.created_at),
    ]
    if transfer.submitted_at:
        steps.append(WorkflowStep(name=STEP_SUBMIT, status=StepStatus.COMPLETED,
                                  completed_at=transfer.submitted_at))
    if transfer.confirmed_at:
        steps.append(WorkflowStep(name=STEP_CONFIRM, status=StepStatus.COMPLETED,
                                  completed_at=transfer.confirmed_at))
    if transfer.settled_at:
        steps.extend(
            WorkflowStep(name=name, status=StepStatus.COMPLETED, completed_at=transfer.settled_at)
            for name in SETTLEMENT_PHASES
        )
    return steps
