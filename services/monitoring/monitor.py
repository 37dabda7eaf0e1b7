import asyncio
from datetime import datetime, timedelta
from typing import List, Optional

from core.config.settings import Settings
from core.database.connection import DatabaseManager
from core.logging import get_error_logger_safe, get_monitoring_logger_safe
from core.monitoring.prometheus_metrics import SettlementMetricsCollector
from core.trading.repository import TradeRepository
from core.utils.exceptions import TransientError, TransferNotFoundError, create_error_context
from core.utils.time_utils import Clock, as_utc, hours_between, utc_now
from services.custodian.gateway import CustodianGateway
from services.transfers.models import OPEN_STATUSES, CustodialTransfer, TransferStatus
from services.transfers.repository import TransferRepository
from services.transfers.state_machine import TransferStateMachine
from .models import MonitorCycleResult, MonitoringStats

# Forward order of the happy path; used to walk a lagging local status
_PROGRESS = {
    TransferStatus.PENDING: 0,
    TransferStatus.SUBMITTED: 1,
    TransferStatus.CONFIRMED: 2,
    TransferStatus.SETTLED: 3,
}


class StuckTransferMonitor:
    """
    One sweep over open transfers.

    Polls the custodian for each pending/submitted/confirmed transfer and
    moves the local state machine forward to match, flags transfers older
    than the alert threshold, and cancels open transfers whose trade has
    already failed. The sweep itself has no scheduling; see
    TransferMonitorService for the interval loop.
    """

    def __init__(self, settings: Settings, db_manager: DatabaseManager,
                 state_machine: TransferStateMachine, transfers: TransferRepository,
                 trades: TradeRepository, gateway: CustodianGateway,
                 metrics: Optional[SettlementMetricsCollector] = None, clock: Clock = utc_now):
        self.settings = settings
        self.config = settings.monitoring
        self.db_manager = db_manager
        self.state_machine = state_machine
        self.transfers = transfers
        self.trades = trades
        self.gateway = gateway
        self.metrics = metrics
        self.clock = clock
        self.logger = get_monitoring_logger_safe("stuck_transfer_monitor")
        self.error_logger = get_error_logger_safe("stuck_transfer_monitor")
        self.last_cycle_time: Optional[datetime] = None
        self.last_result: Optional[MonitorCycleResult] = None

    async def sweep(self, now: Optional[datetime] = None) -> MonitorCycleResult:
        now = now or self.clock()
        result = MonitorCycleResult(started_at=now)
        self.logger.info("Starting custodial monitoring cycle")

        async with self.db_manager.get_session() as session:
            open_transfers = await self.transfers.list_open(session)
        self.logger.info("Open transfers to monitor", count=len(open_transfers))

        semaphore = asyncio.Semaphore(self.config.max_concurrent_polls)

        async def visit(transfer: CustodialTransfer) -> None:
            async with semaphore:
                await self._visit(transfer, now, result)

        await asyncio.gather(*(visit(t) for t in open_transfers))
        result.cancelled = await self.cancel_orphaned_transfers()

        result.completed_at = self.clock()
        self.last_cycle_time = result.completed_at
        self.last_result = result
        if self.metrics:
            outcome = "errors" if result.failed else "ok"
            self.metrics.record_monitor_cycle(outcome, len(open_transfers), len(result.stuck_transfer_ids))
        self.logger.info("Custodial monitoring cycle completed", checked=result.checked,
                         updated=result.updated, failed=result.failed, alerts=result.alerts,
                         cancelled=result.cancelled)
        return result

    async def check_transfer(self, transfer: CustodialTransfer) -> bool:
        """Poll the custodian and walk the local status towards the reported one.

        Returns True when the local status changed. Custodian errors propagate.
        """
        if not transfer.custodian_reference:
            self.logger.warning("Open transfer has no custodian reference", transfer_id=transfer.transfer_id)
            return False

        response = await self.gateway.poll_status(transfer.custodian_reference)
        remote = TransferStatus(response.status.value)
        local = transfer.status
        if remote == local:
            return False

        self.logger.info("Custodian status differs", transfer_id=transfer.transfer_id,
                         previous_status=local.value, custodian_status=remote.value)

        if remote == TransferStatus.FAILED:
            reason = response.message or "Custodian reported transfer failed"
            await self.state_machine.fail(transfer.transfer_id, reason, fail_trade=True)
            self.error_logger.error("Transfer failed", transfer_id=transfer.transfer_id,
                                    trade_id=transfer.trade_id, reason=reason)
            return True

        if remote == TransferStatus.CANCELLED:
            await self.state_machine.cancel(transfer.transfer_id,
                                            response.message or "Cancelled by custodian")
            return True

        if _PROGRESS[remote] < _PROGRESS[local]:
            self.logger.debug("Custodian status behind local status", transfer_id=transfer.transfer_id,
                              local_status=local.value, custodian_status=remote.value)
            return False

        while _PROGRESS[local] < _PROGRESS[remote]:
            if local == TransferStatus.PENDING:
                local = (await self.state_machine.submit(transfer.transfer_id)).status
            elif local == TransferStatus.SUBMITTED:
                local = (await self.state_machine.confirm(transfer.transfer_id)).status
            else:
                local = (await self.state_machine.settle(transfer.transfer_id)).status
        return True

    def is_stuck(self, transfer: CustodialTransfer, now: datetime) -> bool:
        if transfer.is_terminal or transfer.created_at is None:
            return False
        return hours_between(transfer.created_at, now) > self.config.alert_threshold_hours

    async def monitor_transfer(self, transfer_id: str) -> CustodialTransfer:
        """Manual status check for a single transfer."""
        transfer = await self.state_machine.get(transfer_id)
        if transfer.status in OPEN_STATUSES:
            await self.check_transfer(transfer)
        transfer = await self.state_machine.get(transfer_id)
        self.logger.info("Manual transfer monitoring completed", transfer_id=transfer_id,
                         status=transfer.status.value)
        return transfer

    async def cancel_orphaned_transfers(self) -> int:
        """Cancel open transfers still attached to trades that already failed."""
        async with self.db_manager.get_session() as session:
            failed_trades = await self.trades.list_failed_with_transfer(session)
            candidates: List[CustodialTransfer] = []
            for trade in failed_trades:
                transfer = await self.transfers.get(session, trade.custodial_transfer_id)
                if transfer is not None and transfer.status in OPEN_STATUSES:
                    candidates.append(transfer)

        cancelled = 0
        for transfer in candidates:
            self.logger.warning("Found pending transfer for failed trade", transfer_id=transfer.transfer_id,
                                trade_id=transfer.trade_id, status=transfer.status.value)
            try:
                await self.state_machine.cancel(transfer.transfer_id, "Associated trade failed")
            except Exception as e:
                self.logger.error("Failed to cancel transfer for failed trade",
                                  **create_error_context(e, "cancel_orphaned_transfer",
                                                         {"transfer_id": transfer.transfer_id}))
                continue
            cancelled += 1
            self.logger.info("Cancelled transfer for failed trade", transfer_id=transfer.transfer_id,
                             trade_id=transfer.trade_id)
        return cancelled

    async def get_monitoring_stats(self, is_running: bool = False) -> MonitoringStats:
        now = self.clock()
        async with self.db_manager.get_session() as session:
            open_transfers = await self.transfers.list_open(session)
            failed = await self.transfers.count_by_status(session, TransferStatus.FAILED)
        cutoff = now - timedelta(hours=self.config.alert_threshold_hours)
        return MonitoringStats(
            is_running=is_running,
            check_interval_seconds=self.config.check_interval_seconds,
            alert_threshold_hours=self.config.alert_threshold_hours,
            pending_transfers=len(open_transfers),
            stuck_transfers=sum(1 for t in open_transfers if t.created_at and as_utc(t.created_at) < cutoff),
            failed_transfers=failed,
            last_cycle_time=self.last_cycle_time,
            last_result=self.last_result,
        )

    async def _visit(self, transfer: CustodialTransfer, now: datetime, result: MonitorCycleResult) -> None:
        try:
            if await self.check_transfer(transfer):
                result.updated += 1
            result.checked += 1
        except TransientError as e:
            result.failed += 1
            self.logger.warning("Custodian unavailable, retrying next cycle",
                                transfer_id=transfer.transfer_id, error=str(e))
        except Exception as e:
            result.failed += 1
            self.logger.error("Failed to check transfer status",
                              **create_error_context(e, "check_transfer_status",
                                                     {"transfer_id": transfer.transfer_id}))

        try:
            current = await self.state_machine.get(transfer.transfer_id)
        except TransferNotFoundError:
            return
        if self.is_stuck(current, now):
            result.alerts += 1
            result.stuck_transfer_ids.append(current.transfer_id)
            self._alert_stuck(current, now)

    def _alert_stuck(self, transfer: CustodialTransfer, now: datetime) -> None:
        hours = round(hours_between(transfer.created_at, now), 2)
        self.logger.warning("Stuck transfer detected", transfer_id=transfer.transfer_id,
                            trade_id=transfer.trade_id, status=transfer.status.value,
                            hours_elapsed=hours, alert_threshold_hours=self.config.alert_threshold_hours)
        self.error_logger.error("ALERT: Transfer stuck - manual intervention required",
                                transfer_id=transfer.transfer_id, trade_id=transfer.trade_id,
                                status=transfer.status.value, hours_elapsed=hours,
                                custodian_reference=transfer.custodian_reference)
