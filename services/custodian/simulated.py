from datetime import timedelta
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from core.logging import get_custodian_logger_safe
from core.monitoring.prometheus_metrics import CustodianCallTimer, SettlementMetricsCollector
from core.utils.exceptions import CustodianRejectedError, CustodianUnavailableError
from core.utils.ids import generate_custodian_reference
from core.utils.time_utils import utc_now
from .gateway import CustodianGateway
from .models import (
    CustodianBalance,
    CustodianTransferStatus,
    InitiateResponse,
    StatusResponse,
    SubmitResponse,
    TransferRequest,
)

SIMULATED_FEES = Decimal("25.00")
SETTLEMENT_DAYS = 2


class SimulatedCustodianGateway(CustodianGateway):
    """
    In-memory custodian used as a sandbox and in tests.

    Keeps its own book of transfers and account balances keyed by
    (account, product symbol). Settling a transfer moves balances between
    accounts. Statuses, failures and outages can be forced from outside to
    drive the monitor and the orchestrator's failure paths.
    """

    def __init__(self, name: str = "SimulatedCustodian",
                 metrics: Optional[SettlementMetricsCollector] = None):
        self._name = name
        self.metrics = metrics
        self.logger = get_custodian_logger_safe("simulated_custodian")
        self.transfers: Dict[str, Dict] = {}
        self.balances: Dict[Tuple[str, str], int] = {}
        self.calls: List[Tuple[str, Optional[str]]] = []
        self._unavailable = False
        self._forced_failures: Dict[str, Exception] = {}

    @property
    def name(self) -> str:
        return self._name

    async def initialize(self) -> bool:
        self.logger.info("Simulated custodian initialized", custodian=self.name)
        return True

    async def shutdown(self) -> None:
        self.logger.info("Simulated custodian shutdown", custodian=self.name)

    # Test and sandbox controls

    def set_balance(self, account: str, product_symbol: str, quantity: int) -> None:
        self.balances[(account, product_symbol)] = quantity

    def set_status(self, custodian_reference: str, status: CustodianTransferStatus,
                   message: Optional[str] = None) -> None:
        transfer = self._transfer(custodian_reference, "set_status")
        transfer["status"] = CustodianTransferStatus(status)
        transfer["message"] = message

    def fail_next(self, operation: str, error: Exception) -> None:
        """Raise `error` on the next call of `operation`."""
        self._forced_failures[operation] = error

    def set_unavailable(self, unavailable: bool = True) -> None:
        self._unavailable = unavailable

    def status_of(self, custodian_reference: str) -> CustodianTransferStatus:
        return self._transfer(custodian_reference, "status_of")["status"]

    # Gateway operations

    async def initiate(self, request: TransferRequest) -> InitiateResponse:
        with CustodianCallTimer(self.metrics, "initiate"):
            self._before_call("initiate", None)
            reference = generate_custodian_reference()
            self.transfers[reference] = {
                "request": request,
                "status": CustodianTransferStatus.PENDING,
                "message": None,
            }
        self.logger.info("Simulated transfer initiated", transfer_id=request.transfer_id,
                         custodian_reference=reference)
        return InitiateResponse(transfer_id=request.transfer_id, custodian_reference=reference)

    async def submit(self, custodian_reference: str) -> SubmitResponse:
        with CustodianCallTimer(self.metrics, "submit"):
            self._before_call("submit", custodian_reference)
            transfer = self._transfer(custodian_reference, "submit")
            if transfer["status"] == CustodianTransferStatus.PENDING:
                transfer["status"] = CustodianTransferStatus.SUBMITTED
        return SubmitResponse(
            status=transfer["status"],
            estimated_settlement_date=utc_now() + timedelta(days=SETTLEMENT_DAYS),
            fees=SIMULATED_FEES,
            message=transfer["message"],
        )

    async def poll_status(self, custodian_reference: str) -> StatusResponse:
        with CustodianCallTimer(self.metrics, "poll_status"):
            self._before_call("poll_status", custodian_reference)
            transfer = self._transfer(custodian_reference, "poll_status")
        return StatusResponse(status=transfer["status"], message=transfer["message"])

    async def confirm(self, custodian_reference: str) -> None:
        with CustodianCallTimer(self.metrics, "confirm"):
            self._before_call("confirm", custodian_reference)
            transfer = self._transfer(custodian_reference, "confirm")
            status = transfer["status"]
            if status in (CustodianTransferStatus.CONFIRMED, CustodianTransferStatus.SETTLED):
                return
            if status in (CustodianTransferStatus.FAILED, CustodianTransferStatus.CANCELLED):
                raise CustodianRejectedError(
                    f"Transfer {custodian_reference} is {status.value}",
                    custodian=self.name, operation="confirm", status_code=409,
                )
            transfer["status"] = CustodianTransferStatus.CONFIRMED

    async def settle(self, custodian_reference: str) -> None:
        with CustodianCallTimer(self.metrics, "settle"):
            self._before_call("settle", custodian_reference)
            transfer = self._transfer(custodian_reference, "settle")
            status = transfer["status"]
            if status == CustodianTransferStatus.SETTLED:
                return
            if status != CustodianTransferStatus.CONFIRMED:
                raise CustodianRejectedError(
                    f"Transfer {custodian_reference} is {status.value}, cannot settle",
                    custodian=self.name, operation="settle", status_code=409,
                )
            self._move_balances(transfer["request"])
            transfer["status"] = CustodianTransferStatus.SETTLED
        self.logger.info("Simulated transfer settled", custodian_reference=custodian_reference)

    async def get_balances(self, account: Optional[str] = None) -> List[CustodianBalance]:
        with CustodianCallTimer(self.metrics, "get_balances"):
            self._before_call("get_balances", account)
            return [
                CustodianBalance(account=acct, product_symbol=symbol, quantity=qty)
                for (acct, symbol), qty in sorted(self.balances.items())
                if account is None or acct == account
            ]

    def _move_balances(self, request: TransferRequest) -> None:
        source = (request.from_account, request.product_symbol)
        destination = (request.to_account, request.product_symbol)
        available = self.balances.get(source, 0)
        if available < request.quantity:
            raise CustodianRejectedError(
                f"Account {request.from_account} holds {available} {request.product_symbol}",
                custodian=self.name, operation="settle", status_code=422,
            )
        self.balances[source] = available - request.quantity
        self.balances[destination] = self.balances.get(destination, 0) + request.quantity

    def _before_call(self, operation: str, reference: Optional[str]) -> None:
        self.calls.append((operation, reference))
        if self._unavailable:
            raise CustodianUnavailableError(
                f"Custodian {self.name} unavailable", custodian=self.name, operation=operation,
            )
        forced = self._forced_failures.pop(operation, None)
        if forced is not None:
            raise forced

    def _transfer(self, custodian_reference: str, operation: str) -> Dict:
        transfer = self.transfers.get(custodian_reference)
        if transfer is None:
            raise CustodianRejectedError(
                f"Unknown custodian reference {custodian_reference}",
                custodian=self.name, operation=operation, status_code=404,
            )
        return transfer
