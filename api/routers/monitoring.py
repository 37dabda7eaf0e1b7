from typing import List

from fastapi import APIRouter, Depends

from api.dependencies import get_lifespan_services, get_stuck_transfer_monitor, get_transfer_monitor_service
from api.schemas.responses import ServiceInfo, ServiceListResponse
from core.services.base_service import BaseService
from services.monitoring.models import MonitorCycleResult, MonitoringStats
from services.monitoring.monitor import StuckTransferMonitor
from services.monitoring.service import TransferMonitorService

router = APIRouter(prefix="/monitoring", tags=["Monitoring"])


@router.get("/stats", response_model=MonitoringStats)
async def get_monitoring_stats(
    service: TransferMonitorService = Depends(get_transfer_monitor_service),
):
    """Open, stuck and failed transfer counts plus the last sweep's result."""
    return await service.get_monitoring_stats()


@router.post("/sweep", response_model=MonitorCycleResult)
async def run_sweep(
    monitor: StuckTransferMonitor = Depends(get_stuck_transfer_monitor),
):
    """Run one monitoring cycle now, outside the schedule."""
    return await monitor.sweep()


@router.get("/services", response_model=ServiceListResponse)
async def list_services(
    services: List[BaseService] = Depends(get_lifespan_services),
):
    infos = []
    for service in services:
        status = service.get_status()
        infos.append(ServiceInfo(
            service_name=status.pop("service_name"),
            status=status.pop("status"),
            uptime_seconds=status.pop("uptime_seconds"),
            details=status,
        ))
    summary = {
        "total": len(infos),
        "running": sum(1 for i in infos if i.status == "running"),
        "stopped": sum(1 for i in infos if i.status == "stopped"),
        "error": sum(1 for i in infos if i.status == "error"),
    }
    return ServiceListResponse(services=infos, summary=summary)
