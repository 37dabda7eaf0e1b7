from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query

from api.dependencies import get_reconciliation_engine, get_reconciliation_service
from api.schemas.responses import AutoCorrectRequest
from services.reconciliation.engine import ReconciliationEngine
from services.reconciliation.models import AutoCorrectionResult, BalanceReconciliation, ReconciliationReport
from services.reconciliation.service import ReconciliationService

router = APIRouter(prefix="/reconciliation", tags=["Reconciliation"])


@router.post("/full", response_model=ReconciliationReport)
async def run_full_reconciliation(
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    report = await engine.full_reconciliation()
    service.record(report)
    return report


@router.post("/users/{user_id}", response_model=ReconciliationReport)
async def run_user_reconciliation(
    user_id: str,
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    report = await engine.user_reconciliation(user_id)
    service.record(report)
    return report


@router.post("/products/{product_id}", response_model=ReconciliationReport)
async def run_product_reconciliation(
    product_id: str,
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    report = await engine.product_reconciliation(product_id)
    service.record(report)
    return report


@router.get("/balances/{user_id}/{product_id}", response_model=BalanceReconciliation)
async def balance_reconciliation(
    user_id: str,
    product_id: str,
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
):
    return await engine.balance_reconciliation(user_id, product_id)


@router.post("/auto-correct", response_model=AutoCorrectionResult)
async def auto_correct(
    request: AutoCorrectRequest,
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    """
    Apply (or simulate, the default) corrections for a stored report's
    discrepancies. Register/custodian mismatches always go to manual review.
    """
    if request.report_id:
        report = next((r for r in service.recent_reports() if r.id == request.report_id), None)
    else:
        report = service.latest_report()
    if report is None:
        raise HTTPException(status_code=404, detail="Reconciliation report not found")
    return await engine.auto_correct(report.discrepancies, dry_run=request.dry_run)


@router.get("/reports", response_model=List[ReconciliationReport])
async def list_reports(
    limit: int = Query(10, ge=1, le=100),
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    """Most recent reports first."""
    return service.recent_reports(limit)


@router.get("/reports/latest", response_model=ReconciliationReport)
async def latest_report(
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    report = service.latest_report()
    if report is None:
        raise HTTPException(status_code=404, detail="No reconciliation has run yet")
    return report
