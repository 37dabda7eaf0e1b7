from typing import Optional

from core.config.settings import Settings
from core.monitoring.prometheus_metrics import SettlementMetricsCollector
from .gateway import CustodianGateway, HttpCustodianGateway
from .simulated import SimulatedCustodianGateway


def create_custodian_gateway(settings: Settings,
                             metrics: Optional[SettlementMetricsCollector] = None) -> CustodianGateway:
    """Build the gateway selected by ``custodian.mode``."""
    mode = settings.custodian.mode
    if mode == "http":
        return HttpCustodianGateway(settings.custodian, metrics=metrics)
    if mode == "simulated":
        return SimulatedCustodianGateway(name=settings.custodian.name, metrics=metrics)
    raise ValueError(f"Unknown custodian mode: {mode}")
