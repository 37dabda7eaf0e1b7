"""
Prometheus metrics for settlement, custodian calls, reconciliation and monitoring
"""

from .prometheus_metrics import CustodianCallTimer, SettlementMetricsCollector, get_metrics_for_testing

__all__ = [
    "CustodianCallTimer",
    "SettlementMetricsCollector",
    "get_metrics_for_testing",
]
