"""
Three-way reconciliation runs, auto-correction and ownership verification.
"""
from decimal import Decimal

import pytest

from core.utils.exceptions import ProductNotFoundError
from services.reconciliation.models import (
    CorrectionAction,
    DiscrepancyType,
    ReconciliationScope,
    ReportStatus,
    Severity,
)
from services.reconciliation.service import ReconciliationService
from tests.fixtures.ledger_fixtures import (
    BUYER,
    SELLER,
    balances,
    seed_holding,
    seed_product,
)


async def _inflate_portfolio(c, user_id, product, extra):
    async with c.db.transaction() as session:
        await c.portfolios.add_holding(session, user_id, product.product_id, extra, product.price_per_share)


def _by_type(report):
    return {d.type: d for d in report.discrepancies}


async def test_consistent_holdings_reconcile_cleanly(components):
    c = components
    product = await seed_product(c)
    await seed_holding(c, SELLER, product, 100)
    await seed_holding(c, BUYER, product, 25)

    report = await c.reconciliation.full_reconciliation()

    assert report.status == ReportStatus.COMPLETED
    assert report.scope == ReconciliationScope.FULL
    assert report.summary.total_users == 2
    assert report.summary.total_products == 1
    assert report.summary.total_holdings == 2
    assert report.summary.matched_holdings == 2
    assert report.discrepancies == []
    assert report.recommendations == ["All holdings are properly reconciled"]
    assert c.metrics.registry.get_sample_value(
        "custody_reconciliation_runs_total", {"scope": "full", "status": "completed"}) == 1


async def test_portfolio_drift_is_reported_against_register_and_custodian(components):
    c = components
    product = await seed_product(c)
    await seed_holding(c, SELLER, product, 100)
    await _inflate_portfolio(c, SELLER, product, 3)

    report = await c.reconciliation.full_reconciliation()

    found = _by_type(report)
    assert set(found) == {DiscrepancyType.PLATFORM_VS_REGISTER, DiscrepancyType.PLATFORM_VS_CUSTODIAN}
    drift = found[DiscrepancyType.PLATFORM_VS_REGISTER]
    assert drift.platform_quantity == 103 and drift.register_quantity == 100
    assert drift.difference == 3
    assert drift.severity == Severity.MEDIUM
    assert report.status == ReportStatus.COMPLETED
    assert report.summary.matched_holdings == 0
    assert "Review trade execution and portfolio update processes" in report.recommendations


async def test_custodian_disagreement_is_critical(components):
    c = components
    product = await seed_product(c)
    await seed_holding(c, SELLER, product, 100, custodian=90)

    report = await c.reconciliation.product_reconciliation(product.product_id)

    found = _by_type(report)
    assert found[DiscrepancyType.REGISTER_VS_CUSTODIAN].severity == Severity.CRITICAL
    assert found[DiscrepancyType.PLATFORM_VS_CUSTODIAN].severity == Severity.CRITICAL
    assert DiscrepancyType.PLATFORM_VS_REGISTER not in found
    assert report.status == ReportStatus.PARTIAL
    assert report.summary.critical_issues == 2
    assert report.recommendations[0].startswith("URGENT: 2 critical")


async def test_user_scope_covers_register_only_products(components):
    c = components
    acme = await seed_product(c, "ACME")
    beta = await seed_product(c, "BETA")
    await seed_holding(c, SELLER, acme, 100)
    await seed_holding(c, SELLER, beta, 50, portfolio=False)

    report = await c.reconciliation.user_reconciliation(SELLER)

    assert report.scope_id == SELLER
    assert report.summary.total_holdings == 2
    assert report.summary.matched_holdings == 1
    assert {d.product_id for d in report.discrepancies} == {beta.product_id}
    assert _by_type(report)[DiscrepancyType.PLATFORM_VS_REGISTER].severity == Severity.CRITICAL


async def test_unknown_product_scope_raises(components):
    with pytest.raises(ProductNotFoundError):
        await components.reconciliation.product_reconciliation("no-such-product")
    assert components.metrics.registry.get_sample_value(
        "custody_reconciliation_runs_total", {"scope": "product", "status": "failed"}) == 1


async def test_balance_reconciliation_for_one_holding(components):
    c = components
    product = await seed_product(c)
    await seed_holding(c, SELLER, product, 100)
    await _inflate_portfolio(c, SELLER, product, 3)

    balance = await c.reconciliation.balance_reconciliation(SELLER, product.product_id)

    assert (balance.platform_balance, balance.register_balance, balance.custodian_balance) == (103, 100, 100)
    assert balance.is_reconciled is False
    assert balance.discrepancy_amount == 3
    assert balance.discrepancy_percentage > Decimal("2.9")


async def test_dry_run_plans_without_touching_portfolios(components):
    c = components
    product = await seed_product(c, total_shares=10000)
    await seed_holding(c, SELLER, product, 1000)
    await _inflate_portfolio(c, SELLER, product, 1)
    report = await c.reconciliation.full_reconciliation()
    assert all(d.severity == Severity.LOW for d in report.discrepancies)

    result = await c.reconciliation.auto_correct(report.discrepancies, dry_run=True)

    assert result.dry_run is True
    assert len(result.corrected) == 2 and not result.failed
    assert all(not outcome.applied for outcome in result.corrected)
    assert all(outcome.action == CorrectionAction.RESYNC_PORTFOLIO for outcome in result.corrected)
    assert await balances(c, SELLER, product) == (1000, 1001, 1000)


async def test_live_correction_resyncs_low_severity_drift(components):
    c = components
    product = await seed_product(c, total_shares=10000)
    await seed_holding(c, SELLER, product, 1000)
    await _inflate_portfolio(c, SELLER, product, 1)
    report = await c.reconciliation.full_reconciliation()

    result = await c.reconciliation.auto_correct(report.discrepancies, dry_run=False)

    assert len(result.corrected) == 2
    assert all(outcome.applied and outcome.target_quantity == 1000 for outcome in result.corrected)
    assert await balances(c, SELLER, product) == (1000, 1000, 1000)
    assert (await c.reconciliation.full_reconciliation()).discrepancies == []


async def test_live_correction_leaves_serious_issues_for_review(components):
    c = components
    product = await seed_product(c)
    await seed_holding(c, SELLER, product, 100, custodian=90)
    await seed_holding(c, BUYER, product, 100)
    await _inflate_portfolio(c, BUYER, product, 10)
    report = await c.reconciliation.full_reconciliation()

    result = await c.reconciliation.auto_correct(report.discrepancies, dry_run=False)

    assert not result.corrected
    assert len(result.failed) == len(report.discrepancies) == 4
    assert all(outcome.action == CorrectionAction.MANUAL_REVIEW for outcome in result.failed)
    assert await balances(c, SELLER, product) == (100, 100, 90)
    assert await balances(c, BUYER, product) == (100, 110, 100)


async def test_service_keeps_reports_and_plans_corrections(components):
    c = components
    product = await seed_product(c)
    await seed_holding(c, SELLER, product, 100)
    await _inflate_portfolio(c, SELLER, product, 3)
    service = ReconciliationService(c.settings, c.reconciliation)

    first = await service.run_once()
    second = await service.run_once()

    assert service.latest_report().id == second.id
    assert [r.id for r in service.recent_reports()] == [second.id, first.id]
    assert service.recent_reports(limit=1)[0].id == second.id
    assert service.last_correction.dry_run is True
    assert await balances(c, SELLER, product) == (100, 103, 100)


async def test_ownership_verification_reports_each_layer(components):
    c = components
    product = await seed_product(c)
    await seed_holding(c, SELLER, product, 100, custodian=95)

    verification = await c.orchestrator.verify_ownership(SELLER, product.product_id)

    assert verification.is_verified is False
    assert (verification.platform_holdings, verification.register_holdings,
            verification.custodian_holdings) == (100, 100, 95)
    assert len(verification.discrepancies) == 1

    c.gateway.set_unavailable()
    unavailable = await c.orchestrator.verify_ownership(SELLER, product.product_id)
    assert unavailable.custodian_holdings is None
    assert "unavailable" in unavailable.discrepancies[0]


async def test_user_holdings_verification_covers_portfolio(components):
    c = components
    acme = await seed_product(c, "ACME")
    beta = await seed_product(c, "BETA")
    await seed_holding(c, SELLER, acme, 100)
    await seed_holding(c, SELLER, beta, 20)

    results = await c.orchestrator.reconcile_user_holdings(SELLER)

    assert {r.product_id for r in results} == {acme.product_id, beta.product_id}
    assert all(r.is_verified for r in results)
