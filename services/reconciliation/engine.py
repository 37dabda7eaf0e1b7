import time
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from core.config.settings import ReconciliationSettings, Settings
from core.database.connection import DatabaseManager
from core.logging import get_audit_logger_safe, get_reconciliation_logger_safe
from core.monitoring.prometheus_metrics import SettlementMetricsCollector
from core.trading.models import Product
from core.trading.repository import ProductRepository
from core.utils.exceptions import NotFoundError, ProductNotFoundError, create_error_context
from core.utils.ids import custodian_account_number, generate_report_id
from services.custodian.gateway import CustodianGateway
from services.ledger.repository import ShareLedger
from services.portfolio.repository import PortfolioStore
from .models import (
    AutoCorrectionResult,
    BalanceReconciliation,
    CorrectionAction,
    CorrectionOutcome,
    DiscrepancyType,
    ReconciliationDiscrepancy,
    ReconciliationReport,
    ReconciliationScope,
    ReconciliationSummary,
    ReportStatus,
    Severity,
)

HUNDRED = Decimal("100")

_SUGGESTED_ACTIONS = {
    DiscrepancyType.PLATFORM_VS_REGISTER: "Update portfolio to match share register or investigate trade history",
    DiscrepancyType.REGISTER_VS_CUSTODIAN: "Verify custodian records and pending transfers",
    DiscrepancyType.PLATFORM_VS_CUSTODIAN: "Full reconciliation required - check all transfer records",
}


def difference_percentage(a: int, b: int) -> Decimal:
    """|a - b| as a percentage of the larger of the two; 0 when both are 0."""
    base = max(abs(a), abs(b))
    if base == 0:
        return Decimal("0")
    return Decimal(abs(a - b)) * HUNDRED / Decimal(base)


def classify_severity(a: int, b: int, thresholds: ReconciliationSettings) -> Severity:
    difference = abs(a - b)
    if difference == 0:
        return Severity.LOW
    if min(abs(a), abs(b)) == 0:
        return Severity.CRITICAL
    percentage = difference_percentage(a, b)
    if percentage >= Decimal(str(thresholds.critical_threshold_pct)):
        return Severity.CRITICAL
    if percentage >= Decimal(str(thresholds.high_threshold_pct)):
        return Severity.HIGH
    if percentage >= Decimal(str(thresholds.medium_threshold_pct)):
        return Severity.MEDIUM
    return Severity.LOW


def build_recommendations(discrepancies: List[ReconciliationDiscrepancy]) -> List[str]:
    recommendations = []
    critical = sum(1 for d in discrepancies if d.severity == Severity.CRITICAL)
    high = sum(1 for d in discrepancies if d.severity == Severity.HIGH)
    if critical:
        recommendations.append(f"URGENT: {critical} critical discrepancies require immediate attention")
    if high:
        recommendations.append(f"{high} high-severity discrepancies should be resolved within 24 hours")
    if any(d.type == DiscrepancyType.PLATFORM_VS_REGISTER for d in discrepancies):
        recommendations.append("Review trade execution and portfolio update processes")
    if any(d.type == DiscrepancyType.REGISTER_VS_CUSTODIAN for d in discrepancies):
        recommendations.append("Verify custodial transfer completion and share register updates")
    if not discrepancies:
        recommendations.append("All holdings are properly reconciled")
    return recommendations


class _CustodianSnapshot:
    """Per-run cache of custodian balances, one gateway call per account."""

    def __init__(self, gateway: CustodianGateway):
        self.gateway = gateway
        self._accounts: Dict[str, Dict[str, int]] = {}

    async def quantity(self, account: str, product_symbol: str) -> int:
        if account not in self._accounts:
            holdings: Dict[str, int] = {}
            for balance in await self.gateway.get_balances(account):
                if balance.account == account:
                    holdings[balance.product_symbol] = holdings.get(balance.product_symbol, 0) + balance.quantity
            self._accounts[account] = holdings
        return self._accounts[account].get(product_symbol, 0)


class ReconciliationEngine:
    """
    Three-way comparison of portfolio, share register and custodian.

    Each (user, product) pair is read as its own point-in-time snapshot;
    a run takes no locks and tolerates in-flight settlements showing up as
    transient drift. Only low-severity discrepancies are ever corrected
    automatically.
    """

    def __init__(self, settings: Settings, db_manager: DatabaseManager, ledger: ShareLedger,
                 portfolios: PortfolioStore, products: ProductRepository, gateway: CustodianGateway,
                 metrics: Optional[SettlementMetricsCollector] = None):
        self.settings = settings
        self.thresholds = settings.reconciliation
        self.db_manager = db_manager
        self.ledger = ledger
        self.portfolios = portfolios
        self.products = products
        self.gateway = gateway
        self.metrics = metrics
        self.logger = get_reconciliation_logger_safe("reconciliation_engine")
        self.audit_logger = get_audit_logger_safe("reconciliation_engine")

    def classify(self, a: int, b: int) -> Severity:
        return classify_severity(a, b, self.thresholds)

    # Runs

    async def full_reconciliation(self) -> ReconciliationReport:
        async def pairs():
            async with self.db_manager.get_session() as session:
                users = await self.portfolios.list_user_ids(session)
                products = await self.products.list_active(session)
            return users, products, [(u, p) for u in users for p in products]

        return await self._run(ReconciliationScope.FULL, None, pairs)

    async def user_reconciliation(self, user_id: str) -> ReconciliationReport:
        async def pairs():
            async with self.db_manager.get_session() as session:
                held = {p for _, p in await self.portfolios.holding_pairs(session, user_id=user_id)}
                held |= set((await self.ledger.holdings_by_owner(session, user_id)).keys())
                products = [await self._product(session, product_id) for product_id in sorted(held)]
            return [user_id], products, [(user_id, p) for p in products]

        return await self._run(ReconciliationScope.USER, user_id, pairs)

    async def product_reconciliation(self, product_id: str) -> ReconciliationReport:
        async def pairs():
            async with self.db_manager.get_session() as session:
                product = await self._product(session, product_id)
                users = {u for u, _ in await self.portfolios.holding_pairs(session, product_id=product_id)}
                users |= set(await self.ledger.owners_of(session, product_id))
            users = sorted(users)
            return users, [product], [(u, product) for u in users]

        return await self._run(ReconciliationScope.PRODUCT, product_id, pairs)

    async def balance_reconciliation(self, user_id: str, product_id: str) -> BalanceReconciliation:
        async with self.db_manager.get_session() as session:
            product = await self._product(session, product_id)
        platform, register, custodian = await self._quantities(user_id, product, _CustodianSnapshot(self.gateway))
        return BalanceReconciliation(
            user_id=user_id, product_id=product_id,
            platform_balance=platform, register_balance=register, custodian_balance=custodian,
            is_reconciled=platform == register == custodian,
            discrepancy_amount=abs(platform - custodian),
            discrepancy_percentage=difference_percentage(platform, custodian),
        )

    async def reconcile_user_product(self, user_id: str, product: Product,
                                     snapshot: Optional[_CustodianSnapshot] = None) -> List[ReconciliationDiscrepancy]:
        snapshot = snapshot or _CustodianSnapshot(self.gateway)
        platform, register, custodian = await self._quantities(user_id, product, snapshot)
        return self.compare(user_id, product.product_id, platform, register, custodian)

    def compare(self, user_id: str, product_id: str, platform: int, register: int,
                custodian: int) -> List[ReconciliationDiscrepancy]:
        """Independent pairwise checks; one root cause may yield two records."""
        checks: Iterable[Tuple[DiscrepancyType, int, int, str]] = (
            (DiscrepancyType.PLATFORM_VS_REGISTER, platform, register,
             f"Platform portfolio shows {platform} shares, but share register shows {register} shares"),
            (DiscrepancyType.REGISTER_VS_CUSTODIAN, register, custodian,
             f"Share register shows {register} shares, but custodian shows {custodian} shares"),
            (DiscrepancyType.PLATFORM_VS_CUSTODIAN, platform, custodian,
             f"Platform shows {platform} shares, but custodian shows {custodian} shares"),
        )
        return [
            ReconciliationDiscrepancy(
                type=kind, user_id=user_id, product_id=product_id,
                platform_quantity=platform, register_quantity=register, custodian_quantity=custodian,
                difference=left - right, severity=self.classify(left, right),
                description=description, suggested_action=_SUGGESTED_ACTIONS[kind],
            )
            for kind, left, right, description in checks
            if left != right
        ]

    # Auto-correction

    async def auto_correct(self, discrepancies: List[ReconciliationDiscrepancy],
                           dry_run: bool = True) -> AutoCorrectionResult:
        """Resync portfolio holdings for low-severity drift.

        Anything above low, and any register/custodian disagreement, is
        left for manual review. Dry runs report the plan and touch nothing.
        """
        result = AutoCorrectionResult(dry_run=dry_run)
        for discrepancy in discrepancies:
            outcome = self._plan(discrepancy)
            if outcome.action == CorrectionAction.MANUAL_REVIEW:
                result.failed.append(outcome)
                self._record_correction(outcome, "manual_review")
                continue
            if dry_run:
                result.corrected.append(outcome)
                self._record_correction(outcome, "planned")
                continue
            try:
                outcome.target_quantity = await self._resync_portfolio(discrepancy.user_id, discrepancy.product_id)
                outcome.applied = True
                result.corrected.append(outcome)
                self._record_correction(outcome, "applied")
            except Exception as e:
                outcome.error = str(e)
                result.failed.append(outcome)
                self._record_correction(outcome, "error")
                self.logger.error("Auto-correction failed",
                                  **create_error_context(e, "auto_correct", {
                                      "user_id": discrepancy.user_id,
                                      "product_id": discrepancy.product_id,
                                      "type": discrepancy.type.value,
                                  }))

        result.summary = (f"Auto-correction {'simulation' if dry_run else 'execution'}: "
                          f"{len(result.corrected)} corrected, {len(result.failed)} failed")
        self.audit_logger.info("Reconciliation auto-correction", dry_run=dry_run,
                               corrected=len(result.corrected), failed=len(result.failed))
        return result

    def _plan(self, discrepancy: ReconciliationDiscrepancy) -> CorrectionOutcome:
        manual = CorrectionOutcome(discrepancy=discrepancy, action=CorrectionAction.MANUAL_REVIEW)
        if discrepancy.severity != Severity.LOW:
            return manual
        if discrepancy.type == DiscrepancyType.REGISTER_VS_CUSTODIAN:
            return manual
        if (discrepancy.type == DiscrepancyType.PLATFORM_VS_CUSTODIAN
                and discrepancy.register_quantity != discrepancy.custodian_quantity):
            return manual
        return CorrectionOutcome(discrepancy=discrepancy, action=CorrectionAction.RESYNC_PORTFOLIO,
                                 target_quantity=discrepancy.register_quantity)

    async def _resync_portfolio(self, user_id: str, product_id: str) -> int:
        async with self.db_manager.transaction() as session:
            register = await self.ledger.balance(session, user_id, product_id)
            await self.portfolios.set_quantity(session, user_id, product_id, register)
        self.audit_logger.info("Portfolio resynced to share register", user_id=user_id,
                               product_id=product_id, quantity=register)
        return register

    def _record_correction(self, outcome: CorrectionOutcome, result: str) -> None:
        if self.metrics:
            self.metrics.record_auto_correction(outcome.action.value, result)

    # Internals

    async def _run(self, scope: ReconciliationScope, scope_id: Optional[str], load_pairs) -> ReconciliationReport:
        started = time.perf_counter()
        report = ReconciliationReport(id=generate_report_id(), scope=scope, scope_id=scope_id)
        self.logger.info("Reconciliation started", report_id=report.id, scope=scope.value, scope_id=scope_id)

        try:
            users, products, pairs = await load_pairs()
        except Exception as e:
            report.status = ReportStatus.FAILED
            report.errors.append(str(e))
            report.summary.errors = 1
            report.execution_time_ms = round((time.perf_counter() - started) * 1000, 2)
            self.logger.error("Reconciliation failed", **create_error_context(e, "reconciliation", {
                "report_id": report.id, "scope": scope.value, "scope_id": scope_id,
            }))
            self._record_run(report)
            if isinstance(e, NotFoundError):
                raise
            return report

        snapshot = _CustodianSnapshot(self.gateway)
        summary = ReconciliationSummary(total_users=len(users), total_products=len(products))
        for user_id, product in pairs:
            try:
                found = await self.reconcile_user_product(user_id, product, snapshot)
            except Exception as e:
                summary.errors += 1
                report.errors.append(f"{user_id}/{product.product_id}: {e}")
                self.logger.warning("Holding could not be reconciled", report_id=report.id,
                                    user_id=user_id, product_id=product.product_id, error=str(e))
                continue
            summary.total_holdings += 1
            if not found:
                summary.matched_holdings += 1
            report.discrepancies.extend(found)

        summary.discrepancies = len(report.discrepancies)
        summary.critical_issues = sum(1 for d in report.discrepancies if d.severity == Severity.CRITICAL)
        report.summary = summary
        report.recommendations = build_recommendations(report.discrepancies)
        report.status = ReportStatus.PARTIAL if summary.critical_issues or summary.errors else ReportStatus.COMPLETED
        report.execution_time_ms = round((time.perf_counter() - started) * 1000, 2)

        for discrepancy in report.discrepancies:
            if self.metrics:
                self.metrics.record_discrepancy(discrepancy.type.value, discrepancy.severity.value)
        self._record_run(report)
        self.logger.info("Reconciliation completed", report_id=report.id, scope=scope.value,
                         status=report.status.value, discrepancies=summary.discrepancies,
                         critical_issues=summary.critical_issues, errors=summary.errors,
                         execution_time_ms=report.execution_time_ms)
        self.audit_logger.info("Reconciliation report", report_id=report.id, scope=scope.value,
                               scope_id=scope_id, status=report.status.value,
                               summary=summary.model_dump())
        return report

    def _record_run(self, report: ReconciliationReport) -> None:
        if self.metrics:
            self.metrics.record_reconciliation_run(report.scope.value, report.status.value)

    async def _quantities(self, user_id: str, product: Product,
                          snapshot: _CustodianSnapshot) -> Tuple[int, int, int]:
        async with self.db_manager.get_session() as session:
            platform = await self.portfolios.quantity(session, user_id, product.product_id)
            register = await self.ledger.balance(session, user_id, product.product_id)
        account = custodian_account_number(self.settings.custodian.account_prefix, user_id)
        custodian = await snapshot.quantity(account, product.symbol)
        return platform, register, custodian

    async def _product(self, session, product_id: str) -> Product:
        product = await self.products.get(session, product_id)
        if product is None:
            raise ProductNotFoundError(f"Product {product_id} not found", product_id=product_id)
        return product
