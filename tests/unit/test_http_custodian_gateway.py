import json
from decimal import Decimal

import httpx
import pytest
from prometheus_client import CollectorRegistry

from core.config.settings import CustodianSettings
from core.monitoring.prometheus_metrics import SettlementMetricsCollector
from core.utils.exceptions import CustodianRejectedError, CustodianTimeoutError, CustodianUnavailableError
from services.custodian.gateway import HttpCustodianGateway, canonical_json, sign_request
from services.custodian.models import CustodianTransferStatus, TransferRequest

SETTINGS = CustodianSettings(name="Acme Trust", mode="http", api_url="https://custodian.test",
                             api_key="key-123", api_secret="s3cret")


def _request() -> TransferRequest:
    return TransferRequest(
        transfer_id="TXF-1", trade_id="T-1", from_account="AIMSELLER", to_account="AIMBUYER",
        product_id="p-1", product_symbol="ACME", quantity=40, price_per_share=Decimal("12.50"),
    )


async def _gateway(handler, metrics=None) -> HttpCustodianGateway:
    gateway = HttpCustodianGateway(SETTINGS, metrics=metrics, transport=httpx.MockTransport(handler))
    await gateway.initialize()
    return gateway


def test_signature_is_hmac_over_method_path_body_timestamp():
    body = canonical_json({"b": 1, "a": "x"})
    assert body == '{"a":"x","b":1}'
    first = sign_request("s3cret", "post", "/transfers", body, "1700000000000")
    assert first == sign_request("s3cret", "POST", "/transfers", body, "1700000000000")
    assert first != sign_request("s3cret", "POST", "/transfers", body, "1700000000001")
    assert len(first) == 64


async def test_initiate_sends_signed_request():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["request"] = request
        return httpx.Response(201, json={"reference": "CUST-ABC"})

    gateway = await _gateway(handler)
    response = await gateway.initiate(_request())
    await gateway.shutdown()

    request = seen["request"]
    body = request.content.decode()
    assert response.custodian_reference == "CUST-ABC"
    assert request.method == "POST"
    assert request.url.path == "/transfers"
    assert json.loads(body)["quantity"] == 40
    assert request.headers["X-Api-Key"] == "key-123"
    expected = sign_request("s3cret", "POST", "/transfers", body, request.headers["X-Timestamp"])
    assert request.headers["X-Signature"] == expected


async def test_submit_and_poll_parse_status():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/submit"):
            return httpx.Response(200, json={"status": "submitted", "fees": "25.00",
                                             "estimated_settlement_date": "2026-01-05T00:00:00+00:00"})
        return httpx.Response(200, json={"status": "confirmed", "message": "matched"})

    gateway = await _gateway(handler)
    submitted = await gateway.submit("CUST-ABC")
    polled = await gateway.poll_status("CUST-ABC")

    assert submitted.status == CustodianTransferStatus.SUBMITTED
    assert submitted.fees == Decimal("25.00")
    assert submitted.estimated_settlement_date.year == 2026
    assert polled.status == CustodianTransferStatus.CONFIRMED
    assert polled.message == "matched"


async def test_confirm_and_settle_treat_conflict_as_done():
    gateway = await _gateway(lambda request: httpx.Response(409, json={"error": "already settled"}))
    await gateway.confirm("CUST-ABC")
    await gateway.settle("CUST-ABC")


async def test_server_errors_are_transient():
    metrics = SettlementMetricsCollector(registry=CollectorRegistry())
    gateway = await _gateway(lambda request: httpx.Response(503), metrics=metrics)

    with pytest.raises(CustodianUnavailableError):
        await gateway.poll_status("CUST-ABC")
    assert metrics.registry.get_sample_value(
        "custody_custodian_calls_total", {"operation": "poll_status", "outcome": "CustodianUnavailable"}
    ) == 1.0


async def test_client_errors_are_permanent():
    gateway = await _gateway(lambda request: httpx.Response(400, json={"error": "bad account"}))

    with pytest.raises(CustodianRejectedError) as exc_info:
        await gateway.initiate(_request())
    assert exc_info.value.status_code == 400
    assert exc_info.value.response == {"error": "bad account"}


async def test_network_failures_map_to_transient_errors():
    def timeout(request):
        raise httpx.ReadTimeout("slow", request=request)

    def refused(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(CustodianTimeoutError):
        await (await _gateway(timeout)).poll_status("CUST-ABC")
    with pytest.raises(CustodianUnavailableError):
        await (await _gateway(refused)).poll_status("CUST-ABC")


async def test_balances_for_one_account():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/accounts/AIMSELLER/balances"
        return httpx.Response(200, json={"balances": [
            {"product_symbol": "ACME", "quantity": 100},
            {"account": "AIMSELLER", "product_symbol": "INIT", "quantity": "7"},
        ]})

    balances = await (await _gateway(handler)).get_balances("AIMSELLER")
    assert [(b.account, b.product_symbol, b.quantity) for b in balances] == [
        ("AIMSELLER", "ACME", 100), ("AIMSELLER", "INIT", 7),
    ]


async def test_calls_before_initialize_fail():
    gateway = HttpCustodianGateway(SETTINGS)
    with pytest.raises(RuntimeError):
        await gateway.poll_status("CUST-ABC")
