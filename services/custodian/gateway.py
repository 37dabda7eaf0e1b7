import hashlib
import hmac
import json
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx

from core.config.settings import CustodianSettings
from core.logging import get_custodian_logger_safe
from core.monitoring.prometheus_metrics import CustodianCallTimer, SettlementMetricsCollector
from core.utils.exceptions import (
    CustodianRejectedError,
    CustodianTimeoutError,
    CustodianUnavailableError,
)
from .models import (
    CustodianBalance,
    CustodianTransferStatus,
    InitiateResponse,
    StatusResponse,
    SubmitResponse,
    TransferRequest,
)


class CustodianGateway(ABC):
    """Opaque RPC surface of the external custodian.

    Implementations pass calls straight through without retrying; transient
    failures surface as CustodianUnavailableError / CustodianTimeoutError and
    are picked up again by the monitor's next cycle. ``confirm`` and
    ``settle`` are idempotent.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Custodian name recorded in transfer metadata."""

    @abstractmethod
    async def initialize(self) -> bool:
        """Prepare connections. Returns True if successful."""

    @abstractmethod
    async def shutdown(self) -> None:
        """Release gateway resources."""

    @abstractmethod
    async def initiate(self, request: TransferRequest) -> InitiateResponse:
        pass

    @abstractmethod
    async def submit(self, custodian_reference: str) -> SubmitResponse:
        pass

    @abstractmethod
    async def poll_status(self, custodian_reference: str) -> StatusResponse:
        pass

    @abstractmethod
    async def confirm(self, custodian_reference: str) -> None:
        pass

    @abstractmethod
    async def settle(self, custodian_reference: str) -> None:
        pass

    @abstractmethod
    async def get_balances(self, account: Optional[str] = None) -> List[CustodianBalance]:
        pass


def canonical_json(body: Optional[Dict[str, Any]]) -> str:
    if not body:
        return ""
    return json.dumps(body, sort_keys=True, separators=(",", ":"), default=str)


def sign_request(secret: str, method: str, endpoint: str, body: str, timestamp: str) -> str:
    """HMAC-SHA256 hex digest over method + endpoint + body + timestamp."""
    payload = f"{method.upper()}{endpoint}{body}{timestamp}"
    return hmac.new(secret.encode(), payload.encode(), hashlib.sha256).hexdigest()


class HttpCustodianGateway(CustodianGateway):
    """Signed JSON-over-HTTP client for a custodian REST API."""

    def __init__(self, settings: CustodianSettings,
                 metrics: Optional[SettlementMetricsCollector] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self.metrics = metrics
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self.logger = get_custodian_logger_safe("http_custodian_gateway")

    @property
    def name(self) -> str:
        return self.settings.name

    async def initialize(self) -> bool:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.settings.api_url,
                timeout=self.settings.timeout_seconds,
                transport=self._transport,
                headers={"Content-Type": "application/json"},
            )
        self.logger.info("Custodian gateway initialized", custodian=self.name,
                         api_url=self.settings.api_url)
        return True

    async def shutdown(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        self.logger.info("Custodian gateway shutdown", custodian=self.name)

    async def initiate(self, request: TransferRequest) -> InitiateResponse:
        payload = {
            "external_id": request.transfer_id,
            "trade_id": request.trade_id,
            "from_account": request.from_account,
            "to_account": request.to_account,
            "product_symbol": request.product_symbol,
            "quantity": request.quantity,
            "price_per_share": str(request.price_per_share),
            "transfer_type": "internal",
            "instructions": request.instructions
            or f"Transfer {request.quantity} shares of {request.product_symbol}",
        }
        data = await self._request("initiate", "POST", "/transfers", payload)
        return InitiateResponse(
            transfer_id=request.transfer_id,
            custodian_reference=data.get("reference") or data["transfer_id"],
        )

    async def submit(self, custodian_reference: str) -> SubmitResponse:
        data = await self._request("submit", "POST", f"/transfers/{custodian_reference}/submit", {})
        return SubmitResponse(
            status=CustodianTransferStatus(data.get("status", "submitted")),
            estimated_settlement_date=data.get("estimated_settlement_date"),
            fees=data.get("fees"),
            message=data.get("message"),
        )

    async def poll_status(self, custodian_reference: str) -> StatusResponse:
        data = await self._request("poll_status", "GET", f"/transfers/{custodian_reference}")
        return StatusResponse(
            status=CustodianTransferStatus(data["status"]),
            message=data.get("message"),
            raw=data,
        )

    async def confirm(self, custodian_reference: str) -> None:
        await self._request("confirm", "POST", f"/transfers/{custodian_reference}/confirm", {},
                            conflict_ok=True)

    async def settle(self, custodian_reference: str) -> None:
        await self._request("settle", "POST", f"/transfers/{custodian_reference}/settle", {},
                            conflict_ok=True)

    async def get_balances(self, account: Optional[str] = None) -> List[CustodianBalance]:
        endpoint = f"/accounts/{account}/balances" if account else "/balances"
        data = await self._request("get_balances", "GET", endpoint)
        return [
            CustodianBalance(
                account=item.get("account", account),
                product_symbol=item["product_symbol"],
                quantity=int(item["quantity"]),
            )
            for item in data.get("balances", [])
        ]

    def _headers(self, method: str, endpoint: str, body: str) -> Dict[str, str]:
        timestamp = str(int(time.time() * 1000))
        return {
            "X-Api-Key": self.settings.api_key,
            "X-Timestamp": timestamp,
            "X-Signature": sign_request(self.settings.api_secret, method, endpoint, body, timestamp),
        }

    async def _request(self, operation: str, method: str, endpoint: str,
                       payload: Optional[Dict[str, Any]] = None,
                       conflict_ok: bool = False) -> Dict[str, Any]:
        if self._client is None:
            raise RuntimeError("HttpCustodianGateway not initialized")

        body = canonical_json(payload) if payload is not None else ""
        with CustodianCallTimer(self.metrics, operation):
            try:
                response = await self._client.request(
                    method, endpoint,
                    content=body or None,
                    headers=self._headers(method, endpoint, body),
                )
            except httpx.TimeoutException as e:
                self.logger.warning("Custodian call timed out", operation=operation, endpoint=endpoint)
                raise CustodianTimeoutError(
                    f"Custodian {self.name} timed out on {operation}",
                    custodian=self.name, operation=operation,
                ) from e
            except httpx.TransportError as e:
                self.logger.warning("Custodian unreachable", operation=operation,
                                    endpoint=endpoint, error=str(e))
                raise CustodianUnavailableError(
                    f"Custodian {self.name} unreachable on {operation}: {e}",
                    custodian=self.name, operation=operation,
                ) from e

            if response.status_code == 409 and conflict_ok:
                self.logger.info("Custodian reports operation already applied",
                                 operation=operation, endpoint=endpoint)
                return {}
            if response.status_code >= 500:
                self.logger.warning("Custodian server error", operation=operation,
                                    endpoint=endpoint, status_code=response.status_code)
                raise CustodianUnavailableError(
                    f"Custodian {self.name} returned {response.status_code} on {operation}",
                    custodian=self.name, operation=operation,
                    details={"status_code": response.status_code},
                )
            if response.status_code >= 400:
                content = _json_or_text(response)
                self.logger.error("Custodian rejected request", operation=operation,
                                  endpoint=endpoint, status_code=response.status_code)
                raise CustodianRejectedError(
                    f"Custodian {self.name} rejected {operation} ({response.status_code})",
                    custodian=self.name, operation=operation,
                    status_code=response.status_code, response=content,
                )

        self.logger.debug("Custodian call succeeded", operation=operation, endpoint=endpoint,
                          status_code=response.status_code)
        return _json_or_text(response)


def _json_or_text(response: httpx.Response) -> Dict[str, Any]:
    if not response.content:
        return {}
    try:
        data = response.json()
    except ValueError:
        return {"text": response.text}
    return data if isinstance(data, dict) else {"data": data}


async def custodian_holding(gateway: CustodianGateway, account: str, product_symbol: str) -> int:
    """Quantity the custodian reports for one account and product."""
    balances = await gateway.get_balances(account)
    return sum(b.quantity for b in balances if b.account == account and b.product_symbol == product_symbol)
