import asyncio
from typing import List, Optional, Tuple

from core.config.settings import Settings
from core.database.connection import DatabaseManager
from core.monitoring.prometheus_metrics import SettlementMetricsCollector
from core.services.base_service import BaseService
from core.trading.models import Trade
from core.trading.repository import TradeRepository
from .models import TransferWorkflow
from .orchestrator import TransferOrchestrator

SHUTDOWN_GRACE_SECONDS = 30.0


class SettlementQueueFullError(RuntimeError):
    pass


class SettlementService(BaseService):
    """
    Bounded worker pool in front of the orchestrator.

    Trades are queued and drained by `settlement.max_workers` workers;
    `submit` returns a future resolving to the finished workflow.
    """

    def __init__(self, settings: Settings, db_manager: DatabaseManager,
                 orchestrator: TransferOrchestrator, trades: TradeRepository,
                 metrics: Optional[SettlementMetricsCollector] = None):
        super().__init__("settlement_service")
        self.settings = settings
        self.db_manager = db_manager
        self.orchestrator = orchestrator
        self.trades = trades
        self.metrics = metrics
        self._queue: Optional[asyncio.Queue] = None
        self._workers: List[asyncio.Task] = []

    async def _start_implementation(self) -> None:
        self._queue = asyncio.Queue(maxsize=self.settings.settlement.queue_maxsize)
        self._workers = [
            self._spawn(self._worker(i), name=f"settlement-worker-{i}")
            for i in range(self.settings.settlement.max_workers)
        ]
        self.logger.info("Settlement workers started", workers=len(self._workers),
                         queue_maxsize=self.settings.settlement.queue_maxsize)

    async def _stop_implementation(self) -> None:
        # Queued requests are cancelled; in-flight pipelines run to completion
        if self._queue is not None:
            while not self._queue.empty():
                _, future = self._queue.get_nowait()
                if not future.done():
                    future.cancel()
                self._queue.task_done()
            try:
                await asyncio.wait_for(self._queue.join(), timeout=SHUTDOWN_GRACE_SECONDS)
            except asyncio.TimeoutError:
                self.logger.warning("In-flight settlements still running at shutdown",
                                    grace_seconds=SHUTDOWN_GRACE_SECONDS)
        self._workers = []

    async def accept_trade(self, trade: Trade) -> Trade:
        """Store a trade handed over by the trading layer if it is not known yet."""
        async with self.db_manager.transaction() as session:
            existing = await self.trades.get(session, trade.trade_id)
            if existing is not None:
                return existing
            return await self.trades.add(session, trade)

    def submit(self, trade: Trade) -> "asyncio.Future[TransferWorkflow]":
        """Queue a trade; raises SettlementQueueFullError instead of waiting for room."""
        if self._queue is None or not self.is_running():
            raise RuntimeError("SettlementService not running")
        future = asyncio.get_running_loop().create_future()
        try:
            self._queue.put_nowait((trade.trade_id, future))
        except asyncio.QueueFull:
            raise SettlementQueueFullError(
                f"Settlement queue full ({self._queue.maxsize}), trade {trade.trade_id} not accepted"
            )
        self._update_depth()
        return future

    async def settle(self, trade: Trade) -> TransferWorkflow:
        return await self.submit(trade)

    def get_status(self):
        status = super().get_status()
        status.update({
            "workers": len(self._workers),
            "queue_depth": self._queue.qsize() if self._queue else 0,
        })
        return status

    async def _worker(self, index: int) -> None:
        while True:
            item: Tuple[str, asyncio.Future] = await self._queue.get()
            trade_id, future = item
            self._update_depth()
            try:
                if future.cancelled():
                    continue
                workflow = await self.orchestrator.execute_transfer(trade_id)
                if not future.done():
                    future.set_result(workflow)
            except asyncio.CancelledError:
                if not future.done():
                    future.cancel()
                raise
            except Exception as e:
                self.logger.warning("Settlement request rejected", worker=index, trade_id=trade_id,
                                    error=str(e), error_type=type(e).__name__)
                if not future.done():
                    future.set_exception(e)
            finally:
                self._queue.task_done()

    def _update_depth(self) -> None:
        if self.metrics and self._queue is not None:
            self.metrics.set_queue_depth(self._queue.qsize())
