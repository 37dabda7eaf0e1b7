import asyncio
import time
from typing import Awaitable, Callable, Dict, List, Optional, Union

from sqlalchemy.exc import IntegrityError

from core.config.settings import Settings
from core.database.connection import DatabaseManager
from core.logging import get_error_logger_safe, get_settlement_logger_safe
from core.monitoring.prometheus_metrics import SettlementMetricsCollector
from core.trading.models import Product, Trade
from core.trading.repository import ProductRepository, TradeRepository
from core.utils.exceptions import (
    ActiveTransferExistsError,
    CustodianRejectedError,
    InsufficientSharesError,
    InvalidTransferStateError,
    OwnershipMismatchError,
    ProductNotFoundError,
    SettlementRollbackError,
    TradeNotFoundError,
    TradeStateError,
    TransientError,
    create_error_context,
    error_code_for,
)
from core.utils.ids import custodian_account_number, generate_entity_id, generate_transfer_id
from core.utils.time_utils import utc_now
from services.custodian.gateway import CustodianGateway, custodian_holding
from services.custodian.models import CustodianTransferStatus, TransferRequest
from services.ledger.repository import ShareLedger
from services.portfolio.repository import PortfolioStore
from .models import (
    CustodialTransfer,
    OwnershipVerification,
    TransferMetadata,
    TransferWorkflow,
    WorkflowStatus,
    WorkflowStep,
)
from .repository import TransferRepository, WorkflowRepository
from .state_machine import (
    PHASE_FINALIZE,
    PHASE_LEDGER,
    SETTLEMENT_PHASES,
    TransferStateMachine,
)

STEP_VALIDATE = "validate_ownership"
STEP_INITIATE = "initiate_custodial_transfer"
STEP_SUBMIT = "submit_to_custodian"
STEP_CONFIRM = "confirm_custodial_transfer"

PIPELINE_STEPS = (STEP_VALIDATE, STEP_INITIATE, STEP_SUBMIT, STEP_CONFIRM) + SETTLEMENT_PHASES


class _StepFailed(Exception):
    def __init__(self, step: str, error: Exception):
        super().__init__(str(error))
        self.step = step
        self.error = error


class TransferOrchestrator:
    """
    Drives one trade through the settlement pipeline:

        validate_ownership -> initiate_custodial_transfer -> submit_to_custodian
        -> confirm_custodial_transfer -> update_share_register
        -> update_portfolios -> finalize_ownership

    Step outcomes are persisted after every step. A failing step halts the
    run and the failed workflow is returned to the caller; completed side
    effects stay in place and the monitor picks the transfer up from there.
    The last three steps are one unit of work in the state machine.
    """

    def __init__(self, settings: Settings, db_manager: DatabaseManager,
                 state_machine: TransferStateMachine, transfers: TransferRepository,
                 workflows: WorkflowRepository, trades: TradeRepository,
                 products: ProductRepository, ledger: ShareLedger, portfolios: PortfolioStore,
                 gateway: CustodianGateway, metrics: Optional[SettlementMetricsCollector] = None):
        self.settings = settings
        self.db_manager = db_manager
        self.state_machine = state_machine
        self.transfers = transfers
        self.workflows = workflows
        self.trades = trades
        self.products = products
        self.ledger = ledger
        self.portfolios = portfolios
        self.gateway = gateway
        self.metrics = metrics
        self.logger = get_settlement_logger_safe("transfer_orchestrator")
        self.error_logger = get_error_logger_safe("transfer_orchestrator")
        self._trade_locks: Dict[str, asyncio.Lock] = {}

    # Ownership checks

    async def validate_ownership(self, seller_id: str, product_id: str, quantity: int) -> int:
        """Check the seller against the ledger, then against the custodian.

        The portfolio cache is not consulted. Returns the
        seller's ledger balance.
        """
        async with self.db_manager.get_session() as session:
            balance = await self.ledger.balance(session, seller_id, product_id)
            product = await self._product(session, product_id)

        if balance < quantity:
            raise InsufficientSharesError(
                f"Seller {seller_id} holds {balance} shares of {product_id} on the register, "
                f"{quantity} required",
                owner_id=seller_id, product_id=product_id, requested=quantity, available=balance,
            )

        if self.settings.settlement.verify_custodian_holdings:
            account = self._account(seller_id)
            custodian_quantity = await custodian_holding(self.gateway, account, product.symbol)
            if custodian_quantity != balance:
                raise OwnershipMismatchError(
                    f"Register shows {balance} shares of {product.symbol} for {seller_id}, "
                    f"custodian account {account} shows {custodian_quantity}",
                    owner_id=seller_id, product_id=product_id,
                    ledger_quantity=balance, custodian_quantity=custodian_quantity,
                )
        return balance

    async def verify_ownership(self, user_id: str, product_id: str) -> OwnershipVerification:
        async with self.db_manager.get_session() as session:
            platform = await self.portfolios.quantity(session, user_id, product_id)
            register = await self.ledger.balance(session, user_id, product_id)
            product = await self._product(session, product_id)

        custodian: Optional[int] = None
        discrepancies: List[str] = []
        if platform != register:
            discrepancies.append(f"Platform holdings ({platform}) do not match share register ({register})")
        try:
            custodian = await custodian_holding(self.gateway, self._account(user_id), product.symbol)
        except TransientError as e:
            discrepancies.append(f"Custodian holdings unavailable: {e}")
        else:
            if custodian != register:
                discrepancies.append(
                    f"Share register ({register}) does not match custodian holdings ({custodian})"
                )

        return OwnershipVerification(
            user_id=user_id, product_id=product_id,
            platform_holdings=platform, register_holdings=register,
            custodian_holdings=custodian,
            is_verified=not discrepancies, discrepancies=discrepancies,
        )

    async def reconcile_user_holdings(self, user_id: str) -> List[OwnershipVerification]:
        async with self.db_manager.get_session() as session:
            portfolio = await self.portfolios.get(session, user_id)
        return [await self.verify_ownership(user_id, product_id) for product_id in portfolio.holdings]

    # Pipeline

    async def execute_transfer(self, trade: Union[Trade, str]) -> TransferWorkflow:
        """Run the pipeline for a pending trade.

        Raises TradeNotFoundError / TradeStateError for unusable trades and
        ActiveTransferExistsError when the trade already has a pipeline in
        flight or a non-terminal transfer. Everything after that is reported
        through the returned workflow.
        """
        trade_id = trade if isinstance(trade, str) else trade.trade_id
        lock = self._trade_locks.setdefault(trade_id, asyncio.Lock())
        if lock.locked():
            raise ActiveTransferExistsError(f"Settlement already running for trade {trade_id}",
                                            trade_id=trade_id)
        async with lock:
            try:
                return await self._execute_locked(trade_id)
            finally:
                self._trade_locks.pop(trade_id, None)

    async def retry_settlement(self, transfer_id: str) -> CustodialTransfer:
        """Retry settle for a transfer left confirmed by a rollback."""
        return await self.state_machine.settle(transfer_id)

    async def _execute_locked(self, trade_id: str) -> TransferWorkflow:
        async with self.db_manager.get_session() as session:
            trade = await self.trades.get(session, trade_id)
            if trade is None:
                raise TradeNotFoundError(f"Trade {trade_id} not found", trade_id=trade_id)
            if not trade.can_settle():
                raise TradeStateError(f"Trade {trade_id} is {trade.status.value}, only pending trades settle",
                                      trade_id=trade_id, status=trade.status.value)
            active = await self.transfers.get_active_for_trade(session, trade_id)
        if active is not None:
            raise ActiveTransferExistsError(
                f"Trade {trade_id} already has transfer {active.transfer_id} in {active.status.value}",
                trade_id=trade_id, transfer_id=active.transfer_id,
            )

        workflow = TransferWorkflow(
            workflow_id=generate_entity_id(),
            trade_id=trade_id,
            steps=[WorkflowStep(name=name) for name in PIPELINE_STEPS],
        )
        await self._persist(workflow)
        started = time.perf_counter()
        self.logger.info("Transfer workflow started", workflow_id=workflow.workflow_id, trade_id=trade_id,
                         seller_id=trade.seller_id, buyer_id=trade.buyer_id,
                         product_id=trade.product_id, quantity=trade.quantity)

        try:
            await self._run_step(workflow, STEP_VALIDATE, lambda: self._validate_step(trade))
            transfer = await self._run_step(workflow, STEP_INITIATE, lambda: self._initiate_step(trade, workflow))
            await self._run_step(workflow, STEP_SUBMIT, lambda: self._submit_step(transfer))
            await self._run_step(workflow, STEP_CONFIRM, lambda: self._confirm_step(transfer))
            await self._settle_steps(workflow, transfer)
        except _StepFailed as failure:
            await self._fail_workflow(workflow, failure, trade)
        else:
            workflow.status = WorkflowStatus.COMPLETED
            workflow.current_step = None
            workflow.completed_at = utc_now()
            await self._persist(workflow)
            self.logger.info("Transfer workflow completed", workflow_id=workflow.workflow_id,
                             trade_id=trade_id, transfer_id=workflow.transfer_id,
                             duration_ms=round((time.perf_counter() - started) * 1000, 2))

        if self.metrics:
            self.metrics.record_workflow(workflow.status.value, time.perf_counter() - started)
        return workflow

    async def _run_step(self, workflow: TransferWorkflow, name: str, action: Callable[[], Awaitable]):
        step = workflow.step(name)
        workflow.current_step = name
        step.start()
        try:
            result = await action()
        except Exception as e:
            step.fail(str(e))
            raise _StepFailed(name, e) from e
        step.complete()
        await self._persist(workflow)
        self.logger.debug("Workflow step completed", workflow_id=workflow.workflow_id, step=name)
        return result

    async def _validate_step(self, trade: Trade) -> None:
        if trade.seller_id == trade.buyer_id:
            raise TradeStateError(f"Trade {trade.trade_id} has the same seller and buyer {trade.seller_id}",
                                  trade_id=trade.trade_id, status=trade.status.value)
        await self.validate_ownership(trade.seller_id, trade.product_id, trade.quantity)

    async def _initiate_step(self, trade: Trade, workflow: TransferWorkflow) -> CustodialTransfer:
        async with self.db_manager.get_session() as session:
            product = await self._product(session, trade.product_id)

        from_account = self._account(trade.seller_id)
        to_account = self._account(trade.buyer_id)
        instructions = f"Transfer {trade.quantity} shares of {product.symbol} from {from_account} to {to_account}"
        transfer = CustodialTransfer(
            transfer_id=generate_transfer_id(),
            trade_id=trade.trade_id,
            from_user_id=trade.seller_id,
            to_user_id=trade.buyer_id,
            product_id=trade.product_id,
            quantity=trade.quantity,
            metadata=TransferMetadata(
                custodian_name=self.gateway.name,
                account_numbers={"from": from_account, "to": to_account},
                instructions=instructions,
            ),
        )
        try:
            async with self.db_manager.transaction() as session:
                transfer = await self.transfers.add(session, transfer)
                await self.trades.attach_transfer(session, trade.trade_id, transfer.transfer_id)
        except IntegrityError as e:
            raise ActiveTransferExistsError(
                f"Trade {trade.trade_id} already has an active transfer", trade_id=trade.trade_id,
            ) from e
        workflow.transfer_id = transfer.transfer_id

        request = TransferRequest(
            transfer_id=transfer.transfer_id, trade_id=trade.trade_id,
            from_account=from_account, to_account=to_account,
            product_id=trade.product_id, product_symbol=product.symbol,
            quantity=trade.quantity, price_per_share=trade.price_per_share,
            instructions=instructions,
        )
        try:
            response = await self.gateway.initiate(request)
        except Exception as e:
            # Nothing exists at the custodian yet; a transient failure leaves the trade pending
            await self._abandon(transfer.transfer_id, f"Custodian initiation failed: {e}",
                                fail_trade=not isinstance(e, TransientError))
            raise

        async with self.db_manager.transaction() as session:
            await self.transfers.set_reference(session, transfer.transfer_id, response.custodian_reference)
            transfer = await self.transfers.get(session, transfer.transfer_id)
        self.logger.info("Custodial transfer initiated", transfer_id=transfer.transfer_id,
                         trade_id=trade.trade_id, custodian_reference=response.custodian_reference)
        return transfer

    async def _submit_step(self, transfer: CustodialTransfer) -> None:
        try:
            response = await self.gateway.submit(transfer.custodian_reference)
        except TransientError:
            raise
        except Exception as e:
            await self._abandon(transfer.transfer_id, f"Custodian submission failed: {e}")
            raise

        if response.status in (CustodianTransferStatus.FAILED, CustodianTransferStatus.CANCELLED):
            reason = response.message or f"Custodian reported {response.status.value} on submission"
            await self._abandon(transfer.transfer_id, reason)
            raise CustodianRejectedError(reason, custodian=self.gateway.name, operation="submit")

        await self.state_machine.submit(transfer.transfer_id, fees=response.fees,
                                        estimated_settlement_date=response.estimated_settlement_date)

    async def _confirm_step(self, transfer: CustodialTransfer) -> None:
        try:
            await self.gateway.confirm(transfer.custodian_reference)
        except TransientError:
            raise
        except Exception as e:
            await self._abandon(transfer.transfer_id, f"Custodian confirmation failed: {e}")
            raise
        await self.state_machine.confirm(transfer.transfer_id)

    async def _settle_steps(self, workflow: TransferWorkflow, transfer: CustodialTransfer) -> None:
        for name in SETTLEMENT_PHASES:
            workflow.step(name).start()
        workflow.current_step = PHASE_LEDGER
        try:
            await self.state_machine.settle(transfer.transfer_id)
        except SettlementRollbackError as e:
            raise self._settlement_failure(workflow, e.phase, e)
        except TransientError as e:
            raise self._settlement_failure(workflow, PHASE_FINALIZE, e)
        except Exception as e:
            raise self._settlement_failure(workflow, PHASE_LEDGER, e)
        for name in SETTLEMENT_PHASES:
            workflow.step(name).complete()

    @staticmethod
    def _settlement_failure(workflow: TransferWorkflow, phase: str, error: Exception) -> _StepFailed:
        # Earlier phases were rolled back with the failing one; they return to pending
        for name in SETTLEMENT_PHASES:
            step = workflow.step(name)
            if name == phase:
                step.fail(str(error))
            else:
                step.started_at = None
        workflow.current_step = phase
        return _StepFailed(phase, error)

    async def _fail_workflow(self, workflow: TransferWorkflow, failure: _StepFailed, trade: Trade) -> None:
        error = failure.error
        workflow.status = WorkflowStatus.FAILED
        workflow.current_step = failure.step
        workflow.error = str(error)
        workflow.error_code = error_code_for(error)
        workflow.completed_at = utc_now()

        if failure.step == STEP_VALIDATE and not isinstance(error, TransientError):
            async with self.db_manager.transaction() as session:
                await self.trades.mark_failed(session, trade.trade_id, str(error))

        await self._persist(workflow)
        if self.metrics:
            self.metrics.record_step_failure(failure.step, workflow.error_code)

        context = create_error_context(error, failure.step, {
            "workflow_id": workflow.workflow_id,
            "trade_id": workflow.trade_id,
            "transfer_id": workflow.transfer_id,
        })
        if isinstance(error, TransientError):
            self.logger.warning("Transfer workflow halted on transient error", **context)
        else:
            self.error_logger.error("Transfer workflow failed", **context)

    async def _abandon(self, transfer_id: str, reason: str, fail_trade: bool = True) -> None:
        try:
            await self.state_machine.fail(transfer_id, reason, fail_trade=fail_trade)
        except InvalidTransferStateError:
            # Already terminal; the concurrent writer's outcome stands
            pass

    async def _persist(self, workflow: TransferWorkflow) -> None:
        async with self.db_manager.transaction() as session:
            await self.workflows.save(session, workflow)

    async def _product(self, session, product_id: str) -> Product:
        product = await self.products.get(session, product_id)
        if product is None:
            raise ProductNotFoundError(f"Product {product_id} not found", product_id=product_id)
        return product

    def _account(self, user_id: str) -> str:
        return custodian_account_number(self.settings.custodian.account_prefix, user_id)
