from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from api.dependencies import (
    get_history_params,
    get_settlement_service,
    get_stuck_transfer_monitor,
    get_transfer_orchestrator,
    get_transfer_reporting,
)
from api.schemas.responses import TradeSubmission
from core.trading.models import Trade
from services.monitoring.monitor import StuckTransferMonitor
from services.transfers.models import CustodialTransfer, TransferAuditTrail, TransferSummary, TransferWorkflow
from services.transfers.orchestrator import TransferOrchestrator
from services.transfers.reporting import TransferReporting
from services.transfers.service import SettlementService

router = APIRouter(prefix="/transfers", tags=["Transfers"])


@router.post("/trades", response_model=TransferWorkflow)
async def settle_trade(
    submission: TradeSubmission,
    settlement: SettlementService = Depends(get_settlement_service),
):
    """
    Accept an executed trade and run its settlement pipeline.

    The response is the finished workflow; a failed workflow is still a 200,
    its `status`, `error` and `error_code` say why.
    """
    fields = submission.model_dump(exclude_none=True)
    trade = await settlement.accept_trade(Trade(**fields))
    return await settlement.settle(trade)


@router.get("", response_model=List[CustodialTransfer])
async def list_transfers(
    params: dict = Depends(get_history_params),
    reporting: TransferReporting = Depends(get_transfer_reporting),
):
    """Transfer history, newest first."""
    return await reporting.history(**params)


@router.get("/summary", response_model=TransferSummary)
async def transfer_summary(
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    product_id: Optional[str] = Query(None),
    reporting: TransferReporting = Depends(get_transfer_reporting),
):
    return await reporting.summary(start_date, end_date, product_id)


@router.get("/{transfer_id}", response_model=CustodialTransfer)
async def get_transfer(
    transfer_id: str,
    reporting: TransferReporting = Depends(get_transfer_reporting),
):
    return await reporting.get_transfer(transfer_id)


@router.get("/{transfer_id}/audit", response_model=TransferAuditTrail)
async def get_audit_trail(
    transfer_id: str,
    reporting: TransferReporting = Depends(get_transfer_reporting),
):
    return await reporting.audit_trail(transfer_id)


@router.post("/{transfer_id}/status-check", response_model=CustodialTransfer)
async def check_transfer_status(
    transfer_id: str,
    monitor: StuckTransferMonitor = Depends(get_stuck_transfer_monitor),
):
    """Poll the custodian for one transfer and apply whatever it reports."""
    return await monitor.monitor_transfer(transfer_id)


@router.post("/{transfer_id}/retry-settlement", response_model=CustodialTransfer)
async def retry_settlement(
    transfer_id: str,
    orchestrator: TransferOrchestrator = Depends(get_transfer_orchestrator),
):
    return await orchestrator.retry_settlement(transfer_id)
