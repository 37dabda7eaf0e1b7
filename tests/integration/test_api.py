"""
HTTP surface over the real container, SQLite and the simulated custodian.

The ASGI transport does not run the lifespan, so the fixture initializes
the database and the settlement workers itself.
"""
import httpx
import pytest
from dependency_injector import providers

from api.main import create_app
from app.containers import AppContainer
from tests.fixtures.ledger_fixtures import (
    BUYER,
    SELLER,
    build_components,
    make_settings,
    seed_holding,
    seed_product,
)


@pytest.fixture
async def api(tmp_path, gateway):
    settings = make_settings(tmp_path)
    container = AppContainer()
    container.settings.override(providers.Object(settings))
    container.custodian_gateway.override(providers.Object(gateway))
    app = create_app(container)

    db = container.db_manager()
    await db.init()
    settlement = container.settlement_service()
    await settlement.start()
    components = build_components(settings, db, gateway, container.prometheus_metrics())

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client, components

    await settlement.stop()
    await db.shutdown()
    container.unwire()


def _trade_body(product, quantity=40):
    return {
        "buyer_id": BUYER,
        "seller_id": SELLER,
        "product_id": product.product_id,
        "quantity": quantity,
        "price_per_share": "12.50",
    }


async def test_submitted_trade_settles_and_is_queryable(api):
    client, c = api
    product = await seed_product(c)
    await seed_holding(c, SELLER, product, 100)

    response = await client.post("/api/v1/transfers/trades", json=_trade_body(product))

    assert response.status_code == 200
    workflow = response.json()
    assert workflow["status"] == "completed"
    transfer_id = workflow["transfer_id"]

    transfer = (await client.get(f"/api/v1/transfers/{transfer_id}")).json()
    assert transfer["status"] == "settled"
    assert transfer["quantity"] == 40

    audit = (await client.get(f"/api/v1/transfers/{transfer_id}/audit")).json()
    assert len(audit["workflow_steps"]) == 7
    assert audit["trade"]["trade_id"] == workflow["trade_id"]

    history = (await client.get("/api/v1/transfers", params={"user_id": BUYER})).json()
    assert [t["transfer_id"] for t in history] == [transfer_id]

    summary = (await client.get("/api/v1/transfers/summary")).json()
    assert summary["completed_transfers"] == 1

    ownership = (await client.get(f"/api/v1/ownership/{BUYER}/{product.product_id}")).json()
    assert ownership["is_verified"] is True
    assert ownership["register_holdings"] == 40


async def test_failed_workflow_is_returned_not_raised(api):
    client, c = api
    product = await seed_product(c)
    await seed_holding(c, SELLER, product, 10)

    response = await client.post("/api/v1/transfers/trades", json=_trade_body(product))

    assert response.status_code == 200
    assert response.json()["status"] == "failed"
    assert response.json()["error_code"] == "InsufficientShares"


async def test_domain_errors_map_to_status_codes(api):
    client, c = api
    product = await seed_product(c)
    await seed_holding(c, SELLER, product, 100)
    workflow = (await client.post("/api/v1/transfers/trades", json=_trade_body(product))).json()

    missing = await client.get("/api/v1/transfers/TXF-missing")
    assert missing.status_code == 404
    assert missing.json()["error"] == "TransferNotFound"
    assert "timestamp" in missing.json()

    conflict = await client.post(f"/api/v1/transfers/{workflow['transfer_id']}/retry-settlement")
    assert conflict.status_code == 409
    assert conflict.json()["error"] == "InvalidTransferState"

    unknown_product = await client.get(f"/api/v1/ownership/{SELLER}/no-such-product")
    assert unknown_product.status_code == 404


async def test_invalid_trade_payload_is_rejected(api):
    client, c = api
    product = await seed_product(c)

    response = await client.post("/api/v1/transfers/trades", json=_trade_body(product, quantity=0))

    assert response.status_code == 422


async def test_reconciliation_reports_round_trip(api):
    client, c = api
    product = await seed_product(c)
    await seed_holding(c, SELLER, product, 100, custodian=90)

    assert (await client.get("/api/v1/reconciliation/reports/latest")).status_code == 404
    assert (await client.post("/api/v1/reconciliation/auto-correct", json={})).status_code == 404

    report = (await client.post("/api/v1/reconciliation/full")).json()
    assert report["status"] == "partial"
    assert report["summary"]["critical_issues"] == 2

    latest = (await client.get("/api/v1/reconciliation/reports/latest")).json()
    assert latest["id"] == report["id"]

    correction = (await client.post("/api/v1/reconciliation/auto-correct",
                                    json={"report_id": report["id"]})).json()
    assert correction["dry_run"] is True
    assert len(correction["failed"]) == 2

    balance = (await client.get(f"/api/v1/reconciliation/balances/{SELLER}/{product.product_id}")).json()
    assert balance["is_reconciled"] is False
    assert balance["custodian_balance"] == 90


async def test_monitoring_endpoints(api):
    client, c = api

    sweep = (await client.post("/api/v1/monitoring/sweep")).json()
    assert sweep["checked"] == 0

    stats = (await client.get("/api/v1/monitoring/stats")).json()
    assert stats["pending_transfers"] == 0
    assert stats["is_running"] is False

    services = (await client.get("/api/v1/monitoring/services")).json()
    assert services["summary"]["total"] == 3
    assert services["summary"]["running"] == 1
    names = {s["service_name"] for s in services["services"]}
    assert names == {"settlement_service", "transfer_monitor_service", "reconciliation_service"}


async def test_health_metrics_and_root(api):
    client, c = api
    product = await seed_product(c)
    await seed_holding(c, SELLER, product, 100)
    await client.post("/api/v1/transfers/trades", json=_trade_body(product))

    health = (await client.get("/health")).json()
    assert health["status"] == "healthy"
    assert health["custodian"] == "TestCustodian"

    metrics = await client.get("/metrics")
    assert metrics.status_code == 200
    assert 'custody_workflows_total{outcome="completed"} 1.0' in metrics.text

    root = (await client.get("/")).json()
    assert root["api_prefix"] == "/api/v1"
