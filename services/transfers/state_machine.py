from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from core.database.connection import DatabaseManager
from core.logging import get_audit_logger_safe, get_error_logger_safe, get_settlement_logger_safe
from core.monitoring.prometheus_metrics import SettlementMetricsCollector
from core.trading.repository import TradeRepository
from core.utils.exceptions import (
    InvalidTransferStateError,
    SettlementRollbackError,
    TradeNotFoundError,
    TradeStateError,
    TransferNotFoundError,
    TransientError,
)
from core.utils.time_utils import utc_now
from services.custodian.gateway import CustodianGateway
from services.ledger.repository import ShareLedger
from services.portfolio.repository import PortfolioStore
from .models import CustodialTransfer, TransferAction, TransferStatus
from .repository import TransferRepository

# (current status, action) -> next status. Anything not listed is illegal.
TRANSITIONS: Dict[Tuple[TransferStatus, TransferAction], TransferStatus] = {
    (TransferStatus.PENDING, TransferAction.SUBMIT): TransferStatus.SUBMITTED,
    (TransferStatus.SUBMITTED, TransferAction.CONFIRM): TransferStatus.CONFIRMED,
    (TransferStatus.CONFIRMED, TransferAction.SETTLE): TransferStatus.SETTLED,
    (TransferStatus.PENDING, TransferAction.FAIL): TransferStatus.FAILED,
    (TransferStatus.SUBMITTED, TransferAction.FAIL): TransferStatus.FAILED,
    (TransferStatus.CONFIRMED, TransferAction.FAIL): TransferStatus.FAILED,
    (TransferStatus.PENDING, TransferAction.CANCEL): TransferStatus.CANCELLED,
    (TransferStatus.SUBMITTED, TransferAction.CANCEL): TransferStatus.CANCELLED,
    (TransferStatus.CONFIRMED, TransferAction.CANCEL): TransferStatus.CANCELLED,
}

# Timestamp column stamped when a transfer enters each status
_TIMESTAMP_FIELDS = {
    TransferStatus.SUBMITTED: "submitted_at",
    TransferStatus.CONFIRMED: "confirmed_at",
    TransferStatus.SETTLED: "settled_at",
    TransferStatus.FAILED: "failed_at",
    TransferStatus.CANCELLED: "cancelled_at",
}

# Settlement phases, in execution order; named after the orchestrator steps they back
PHASE_LEDGER = "update_share_register"
PHASE_PORTFOLIO = "update_portfolios"
PHASE_FINALIZE = "finalize_ownership"
SETTLEMENT_PHASES = (PHASE_LEDGER, PHASE_PORTFOLIO, PHASE_FINALIZE)


def is_legal_transition(current: TransferStatus, action: TransferAction) -> bool:
    return (TransferStatus(current), TransferAction(action)) in TRANSITIONS


def validate_transition(transfer_id: str, current: TransferStatus, action: TransferAction) -> TransferStatus:
    """Return the target status or raise InvalidTransferStateError."""
    current = TransferStatus(current)
    action = TransferAction(action)
    target = TRANSITIONS.get((current, action))
    if target is None:
        raise InvalidTransferStateError(
            f"Cannot {action.value} transfer {transfer_id} in status {current.value}",
            transfer_id=transfer_id, current_status=current.value, action=action.value,
        )
    return target


class TransferStateMachine:
    """
    Sole authority over custodial transfer status.

    Every transition is a compare-and-swap on the stored status, so a stale
    orchestrator or a concurrent monitor tick loses its transition instead
    of overwriting a newer state. `settle` applies the ledger move, the
    portfolio update and the final status change in one unit of work.
    """

    def __init__(self, db_manager: DatabaseManager, transfers: TransferRepository,
                 trades: TradeRepository, ledger: ShareLedger, portfolios: PortfolioStore,
                 gateway: CustodianGateway, metrics: Optional[SettlementMetricsCollector] = None):
        self.db_manager = db_manager
        self.transfers = transfers
        self.trades = trades
        self.ledger = ledger
        self.portfolios = portfolios
        self.gateway = gateway
        self.metrics = metrics
        self.logger = get_settlement_logger_safe("transfer_state_machine")
        self.audit_logger = get_audit_logger_safe("transfer_state_machine")
        self.error_logger = get_error_logger_safe("transfer_state_machine")

    async def get(self, transfer_id: str) -> CustodialTransfer:
        async with self.db_manager.get_session() as session:
            return await self._load(session, transfer_id)

    async def apply(self, session: AsyncSession, transfer_id: str, action: TransferAction,
                    reason: Optional[str] = None, **values) -> CustodialTransfer:
        """Run one transition inside the caller's unit of work.

        The caller logs the transition via `record_transition` once the
        unit of work has committed.
        """
        action = TransferAction(action)
        transfer = await self._load(session, transfer_id)
        try:
            target = validate_transition(transfer_id, transfer.status, action)
        except InvalidTransferStateError:
            self._record_invalid(transfer_id, transfer.status, action)
            raise

        now = utc_now()
        values[_TIMESTAMP_FIELDS[target]] = now
        if reason is not None:
            values["failure_reason"] = reason[:500]

        if not await self.transfers.compare_and_set(session, transfer_id, transfer.status, target, **values):
            current = await self._load(session, transfer_id)
            self._record_invalid(transfer_id, current.status, action, expected=transfer.status)
            raise InvalidTransferStateError(
                f"Transfer {transfer_id} moved to {current.status.value} before {action.value} "
                f"from {transfer.status.value} could be applied",
                transfer_id=transfer_id, current_status=current.status.value, action=action.value,
            )
        return await self._load(session, transfer_id)

    def record_transition(self, previous: TransferStatus, transfer: CustodialTransfer,
                          action: TransferAction) -> None:
        previous = TransferStatus(previous)
        self.audit_logger.info("Transfer state transition",
                               transfer_id=transfer.transfer_id,
                               trade_id=transfer.trade_id,
                               from_status=previous.value,
                               to_status=transfer.status.value,
                               action=TransferAction(action).value,
                               failure_reason=transfer.failure_reason)
        if self.metrics:
            self.metrics.record_transition(previous.value, transfer.status.value)

    async def submit(self, transfer_id: str, fees: Optional[Decimal] = None,
                     estimated_settlement_date: Optional[datetime] = None) -> CustodialTransfer:
        async with self.db_manager.transaction() as session:
            previous = (await self._load(session, transfer_id)).status
            transfer = await self.apply(session, transfer_id, TransferAction.SUBMIT)
            if fees is not None or estimated_settlement_date is not None:
                await self.transfers.update_metadata(session, transfer_id, fees=fees,
                                                     estimated_settlement_date=estimated_settlement_date)
                transfer = await self._load(session, transfer_id)
        self.record_transition(previous, transfer, TransferAction.SUBMIT)
        return transfer

    async def confirm(self, transfer_id: str) -> CustodialTransfer:
        return await self._simple(transfer_id, TransferAction.CONFIRM)

    async def fail(self, transfer_id: str, reason: str, fail_trade: bool = True) -> CustodialTransfer:
        """Terminal failure; optionally marks the owning trade failed in the same unit."""
        async with self.db_manager.transaction() as session:
            previous = (await self._load(session, transfer_id)).status
            transfer = await self.apply(session, transfer_id, TransferAction.FAIL, reason=reason)
            if fail_trade:
                await self.trades.mark_failed(session, transfer.trade_id, reason)
        self.record_transition(previous, transfer, TransferAction.FAIL)
        return transfer

    async def cancel(self, transfer_id: str, reason: Optional[str] = None) -> CustodialTransfer:
        return await self._simple(transfer_id, TransferAction.CANCEL, reason=reason)

    async def settle(self, transfer_id: str) -> CustodialTransfer:
        """Settle a confirmed transfer.

        Ledger move, portfolio update, custodian settle call and the
        confirmed -> settled swap run in one unit of work. A failure in any
        phase rolls everything back and raises SettlementRollbackError; the
        transfer stays confirmed and settle can be retried. Transient
        custodian errors propagate unchanged for the monitor to retry.
        """
        phase = PHASE_LEDGER
        try:
            async with self.db_manager.transaction() as session:
                transfer = await self._load(session, transfer_id)
                if not transfer.can_settle():
                    self._record_invalid(transfer_id, transfer.status, TransferAction.SETTLE)
                    raise InvalidTransferStateError(
                        f"Transfer {transfer_id} is {transfer.status.value}, only confirmed transfers settle",
                        transfer_id=transfer_id, current_status=transfer.status.value,
                        action=TransferAction.SETTLE.value,
                    )
                trade = await self.trades.get(session, transfer.trade_id)
                if trade is None:
                    raise TradeNotFoundError(f"Trade {transfer.trade_id} not found", trade_id=transfer.trade_id)
                if not trade.can_settle():
                    raise self._trade_conflict(transfer, trade.status.value)

                await self.ledger.transfer(session, transfer.from_user_id, transfer.to_user_id,
                                           transfer.product_id, transfer.quantity, transfer_id,
                                           price_per_share=trade.price_per_share)
                phase = PHASE_PORTFOLIO
                await self.portfolios.apply_settlement(session, transfer.from_user_id, transfer.to_user_id,
                                                       transfer.product_id, transfer.quantity,
                                                       trade.price_per_share)
                phase = PHASE_FINALIZE
                if transfer.custodian_reference:
                    await self.gateway.settle(transfer.custodian_reference)
                settled = await self.apply(session, transfer_id, TransferAction.SETTLE)
                if not await self.trades.mark_settled(session, transfer.trade_id):
                    raise self._trade_conflict(transfer, "not_pending")
        except (InvalidTransferStateError, TradeNotFoundError, TradeStateError, TransferNotFoundError):
            raise
        except TransientError as e:
            self.logger.warning("Settlement deferred, custodian unavailable",
                                transfer_id=transfer_id, phase=phase, error=str(e))
            raise
        except Exception as e:
            if self.metrics:
                self.metrics.record_settlement_rollback(phase)
            self.error_logger.critical("Settlement rolled back after custodian confirmation",
                                       transfer_id=transfer_id, phase=phase,
                                       error=str(e), error_type=type(e).__name__)
            raise SettlementRollbackError(
                f"Settlement of {transfer_id} rolled back in {phase}: {e}",
                transfer_id=transfer_id, phase=phase, cause=e,
            ) from e

        self.record_transition(TransferStatus.CONFIRMED, settled, TransferAction.SETTLE)
        self.logger.info("Transfer settled", transfer_id=transfer_id, trade_id=settled.trade_id,
                         from_user_id=settled.from_user_id, to_user_id=settled.to_user_id,
                         product_id=settled.product_id, quantity=settled.quantity)
        return settled

    async def _simple(self, transfer_id: str, action: TransferAction,
                      reason: Optional[str] = None) -> CustodialTransfer:
        async with self.db_manager.transaction() as session:
            previous = (await self._load(session, transfer_id)).status
            transfer = await self.apply(session, transfer_id, action, reason=reason)
        self.record_transition(previous, transfer, action)
        return transfer

    async def _load(self, session: AsyncSession, transfer_id: str) -> CustodialTransfer:
        transfer = await self.transfers.get(session, transfer_id)
        if transfer is None:
            raise TransferNotFoundError(f"Transfer {transfer_id} not found", transfer_id=transfer_id)
        return transfer

    def _trade_conflict(self, transfer: CustodialTransfer, trade_status: str) -> TradeStateError:
        # Raised inside the settle unit, so nothing moves; the transfer stays confirmed
        if self.metrics:
            self.metrics.record_settlement_conflict(trade_status)
        self.error_logger.error("ALERT: Trade/transfer conflict - manual reconciliation required",
                                transfer_id=transfer.transfer_id, trade_id=transfer.trade_id,
                                transfer_status=transfer.status.value, trade_status=trade_status,
                                custodian_reference=transfer.custodian_reference)
        return TradeStateError(
            f"Trade {transfer.trade_id} is {trade_status}; transfer {transfer.transfer_id} not settled",
            trade_id=transfer.trade_id, status=trade_status,
            details={"transfer_id": transfer.transfer_id},
        )

    def _record_invalid(self, transfer_id: str, current: TransferStatus, action: TransferAction,
                        expected: Optional[TransferStatus] = None) -> None:
        if self.metrics:
            self.metrics.record_invalid_transition(TransferAction(action).value)
        self.error_logger.error("Invalid transfer state transition",
                                transfer_id=transfer_id,
                                current_status=TransferStatus(current).value,
                                expected_status=expected.value if expected else None,
                                action=TransferAction(action).value)
