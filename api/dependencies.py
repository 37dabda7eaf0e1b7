from fastapi import Depends, Query
from dependency_injector.wiring import inject, Provide
from typing import List, Optional

from app.containers import AppContainer
from core.config.settings import Settings
from core.services.base_service import BaseService
from services.monitoring.monitor import StuckTransferMonitor
from services.monitoring.service import TransferMonitorService
from services.reconciliation.engine import ReconciliationEngine
from services.reconciliation.service import ReconciliationService
from services.transfers.orchestrator import TransferOrchestrator
from services.transfers.reporting import TransferReporting
from services.transfers.repository import DEFAULT_HISTORY_LIMIT
from services.transfers.service import SettlementService


@inject
def get_settings(
    settings: Settings = Depends(Provide[AppContainer.settings])
) -> Settings:
    """Get application settings for API endpoints"""
    return settings


@inject
def get_settlement_service(
    service: SettlementService = Depends(Provide[AppContainer.settlement_service])
) -> SettlementService:
    return service


@inject
def get_transfer_orchestrator(
    orchestrator: TransferOrchestrator = Depends(Provide[AppContainer.transfer_orchestrator])
) -> TransferOrchestrator:
    return orchestrator


@inject
def get_transfer_reporting(
    reporting: TransferReporting = Depends(Provide[AppContainer.transfer_reporting])
) -> TransferReporting:
    return reporting


@inject
def get_reconciliation_engine(
    engine: ReconciliationEngine = Depends(Provide[AppContainer.reconciliation_engine])
) -> ReconciliationEngine:
    return engine


@inject
def get_reconciliation_service(
    service: ReconciliationService = Depends(Provide[AppContainer.reconciliation_service])
) -> ReconciliationService:
    return service


@inject
def get_stuck_transfer_monitor(
    monitor: StuckTransferMonitor = Depends(Provide[AppContainer.stuck_transfer_monitor])
) -> StuckTransferMonitor:
    return monitor


@inject
def get_transfer_monitor_service(
    service: TransferMonitorService = Depends(Provide[AppContainer.transfer_monitor_service])
) -> TransferMonitorService:
    return service


@inject
def get_lifespan_services(
    services: List[BaseService] = Depends(Provide[AppContainer.lifespan_services])
) -> List[BaseService]:
    return services


# Query parameter dependencies
def get_history_params(
    user_id: Optional[str] = Query(None, description="Buyer or seller"),
    product_id: Optional[str] = Query(None),
    limit: int = Query(DEFAULT_HISTORY_LIMIT, ge=1, le=1000, description="Maximum transfers returned"),
):
    """Get transfer history filter parameters"""
    return {"user_id": user_id, "product_id": product_id, "limit": limit}
