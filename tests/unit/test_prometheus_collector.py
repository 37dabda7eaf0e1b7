from prometheus_client import CollectorRegistry, generate_latest

from core.monitoring.prometheus_metrics import CustodianCallTimer, SettlementMetricsCollector
from core.utils.exceptions import CustodianTimeoutError


def test_collectors_are_isolated_per_registry():
    first = SettlementMetricsCollector(registry=CollectorRegistry())
    second = SettlementMetricsCollector(registry=CollectorRegistry())
    first.record_transition("pending", "submitted")

    assert first.registry.get_sample_value(
        "custody_transfer_transitions_total", {"from_status": "pending", "to_status": "submitted"}) == 1.0
    assert second.registry.get_sample_value(
        "custody_transfer_transitions_total", {"from_status": "pending", "to_status": "submitted"}) is None


def test_custodian_call_timer_records_outcome():
    metrics = SettlementMetricsCollector(registry=CollectorRegistry())
    with CustodianCallTimer(metrics, "submit"):
        pass
    try:
        with CustodianCallTimer(metrics, "submit"):
            raise CustodianTimeoutError("slow", custodian="c")
    except CustodianTimeoutError:
        pass

    get = metrics.registry.get_sample_value
    assert get("custody_custodian_calls_total", {"operation": "submit", "outcome": "ok"}) == 1.0
    assert get("custody_custodian_calls_total", {"operation": "submit", "outcome": "CustodianTimeout"}) == 1.0


def test_monitor_cycle_gauges_in_exposition():
    metrics = SettlementMetricsCollector(registry=CollectorRegistry())
    metrics.record_monitor_cycle("ok", open_count=3, stuck_count=1)
    metrics.record_discrepancy("platform_vs_register", "critical")

    out = generate_latest(metrics.registry).decode()
    assert "custody_stuck_transfers 1.0" in out
    assert "custody_open_transfers 3.0" in out
    assert "custody_reconciliation_discrepancies_total" in out
