"""
Prometheus metrics for settlement, custodian traffic, reconciliation and
the stuck-transfer monitor.
"""

from prometheus_client import Counter, Gauge, Histogram, CollectorRegistry
from typing import Optional
import time


class SettlementMetricsCollector:
    """Metrics registered on an injected registry (one per container/test)"""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()

        # Transfer lifecycle
        self.transitions = Counter(
            'custody_transfer_transitions_total',
            'Custodial transfer state transitions',
            ['from_status', 'to_status'],
            registry=self.registry
        )
        self.invalid_transitions = Counter(
            'custody_invalid_transitions_total',
            'Rejected transitions (illegal or lost compare-and-swap)',
            ['action'],
            registry=self.registry
        )
        self.settlement_rollbacks = Counter(
            'custody_settlement_rollbacks_total',
            'Settlements rolled back after custodian confirmation',
            ['phase'],
            registry=self.registry
        )
        self.settlement_conflicts = Counter(
            'custody_settlement_conflicts_total',
            'Settlements refused because the trade was no longer pending',
            ['trade_status'],
            registry=self.registry
        )

        # Orchestrator
        self.workflows = Counter(
            'custody_workflows_total',
            'Transfer workflows by outcome',
            ['outcome'],
            registry=self.registry
        )
        self.workflow_step_failures = Counter(
            'custody_workflow_step_failures_total',
            'Failed workflow steps',
            ['step', 'error_code'],
            registry=self.registry
        )
        self.workflow_duration = Histogram(
            'custody_workflow_duration_seconds',
            'Wall time of a transfer workflow',
            buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
            registry=self.registry
        )
        self.settlement_queue_depth = Gauge(
            'custody_settlement_queue_depth',
            'Trades waiting for a settlement worker',
            registry=self.registry
        )

        # Custodian gateway
        self.custodian_calls = Counter(
            'custody_custodian_calls_total',
            'Custodian gateway calls by operation and outcome',
            ['operation', 'outcome'],
            registry=self.registry
        )
        self.custodian_latency = Histogram(
            'custody_custodian_call_latency_seconds',
            'Custodian gateway call latency',
            ['operation'],
            buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
            registry=self.registry
        )

        # Reconciliation
        self.reconciliation_runs = Counter(
            'custody_reconciliation_runs_total',
            'Reconciliation runs by scope and report status',
            ['scope', 'status'],
            registry=self.registry
        )
        self.discrepancies = Counter(
            'custody_reconciliation_discrepancies_total',
            'Discrepancies found by type and severity',
            ['type', 'severity'],
            registry=self.registry
        )
        self.auto_corrections = Counter(
            'custody_reconciliation_auto_corrections_total',
            'Auto-correction actions by outcome',
            ['action', 'outcome'],
            registry=self.registry
        )

        # Monitor
        self.monitor_cycles = Counter(
            'custody_monitor_cycles_total',
            'Monitor sweeps by outcome',
            ['outcome'],
            registry=self.registry
        )
        self.stuck_transfers = Gauge(
            'custody_stuck_transfers',
            'Open transfers older than the alert threshold at the last sweep',
            registry=self.registry
        )
        self.open_transfers = Gauge(
            'custody_open_transfers',
            'Non-terminal transfers at the last sweep',
            registry=self.registry
        )
        self.last_monitor_cycle = Gauge(
            'custody_monitor_last_cycle_timestamp_unix',
            'Unix time of the last completed monitor sweep',
            registry=self.registry
        )

    def record_transition(self, from_status: str, to_status: str):
        self.transitions.labels(from_status=from_status, to_status=to_status).inc()

    def record_invalid_transition(self, action: str):
        self.invalid_transitions.labels(action=action).inc()

    def record_settlement_rollback(self, phase: str):
        self.settlement_rollbacks.labels(phase=phase).inc()

    def record_settlement_conflict(self, trade_status: str):
        self.settlement_conflicts.labels(trade_status=trade_status).inc()

    def record_workflow(self, outcome: str, duration_seconds: float):
        self.workflows.labels(outcome=outcome).inc()
        self.workflow_duration.observe(duration_seconds)

    def record_step_failure(self, step: str, error_code: str):
        self.workflow_step_failures.labels(step=step, error_code=error_code).inc()

    def set_queue_depth(self, depth: int):
        self.settlement_queue_depth.set(depth)

    def record_custodian_call(self, operation: str, outcome: str, duration_seconds: float):
        self.custodian_calls.labels(operation=operation, outcome=outcome).inc()
        self.custodian_latency.labels(operation=operation).observe(duration_seconds)

    def record_reconciliation_run(self, scope: str, status: str):
        self.reconciliation_runs.labels(scope=scope, status=status).inc()

    def record_discrepancy(self, discrepancy_type: str, severity: str):
        self.discrepancies.labels(type=discrepancy_type, severity=severity).inc()

    def record_auto_correction(self, action: str, outcome: str):
        self.auto_corrections.labels(action=action, outcome=outcome).inc()

    def record_monitor_cycle(self, outcome: str, open_count: int, stuck_count: int):
        self.monitor_cycles.labels(outcome=outcome).inc()
        self.open_transfers.set(open_count)
        self.stuck_transfers.set(stuck_count)
        self.last_monitor_cycle.set(time.time())


class CustodianCallTimer:
    """Context manager timing one custodian call"""

    def __init__(self, metrics: Optional[SettlementMetricsCollector], operation: str):
        self.metrics = metrics
        self.operation = operation
        self.start_time = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.metrics is not None and self.start_time is not None:
            outcome = "ok" if exc_type is None else getattr(exc_val, "error_code", "error")
            self.metrics.record_custodian_call(self.operation, outcome,
                                               time.perf_counter() - self.start_time)
        return False


def get_metrics_for_testing() -> SettlementMetricsCollector:
    """Get metrics collector with custom registry for testing"""
    return SettlementMetricsCollector(registry=CollectorRegistry())
