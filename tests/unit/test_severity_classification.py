from decimal import Decimal

import pytest

from core.config.settings import ReconciliationSettings
from services.reconciliation.engine import build_recommendations, classify_severity, difference_percentage
from services.reconciliation.models import DiscrepancyType, ReconciliationDiscrepancy, Severity

THRESHOLDS = ReconciliationSettings()


def test_difference_percentage_uses_larger_side():
    assert difference_percentage(100, 90) == Decimal("10")
    assert difference_percentage(90, 100) == Decimal("10")
    assert difference_percentage(0, 0) == Decimal("0")


@pytest.mark.parametrize("a,b,expected", [
    (100, 100, Severity.LOW),
    (0, 0, Severity.LOW),
    (100, 0, Severity.CRITICAL),
    (0, 5, Severity.CRITICAL),
    (100, 90, Severity.CRITICAL),
    (100, 94, Severity.HIGH),
    (100, 95, Severity.HIGH),
    (100, 98, Severity.MEDIUM),
    (100, 99, Severity.MEDIUM),
    (1000, 999, Severity.LOW),
])
def test_classify_severity(a, b, expected):
    assert classify_severity(a, b, THRESHOLDS) == expected


def test_custom_thresholds():
    strict = ReconciliationSettings(critical_threshold_pct=2.0, high_threshold_pct=1.0,
                                    medium_threshold_pct=0.5)
    assert classify_severity(100, 98, strict) == Severity.CRITICAL
    assert classify_severity(1000, 995, strict) == Severity.MEDIUM


def test_thresholds_must_decrease():
    with pytest.raises(ValueError):
        ReconciliationSettings(critical_threshold_pct=1.0, high_threshold_pct=5.0)


def _discrepancy(kind: DiscrepancyType, severity: Severity) -> ReconciliationDiscrepancy:
    return ReconciliationDiscrepancy(
        type=kind, user_id="u", product_id="p", platform_quantity=1, register_quantity=2,
        custodian_quantity=2, difference=1, severity=severity, description="d", suggested_action="s",
    )


def test_recommendations():
    assert build_recommendations([]) == ["All holdings are properly reconciled"]

    recs = build_recommendations([
        _discrepancy(DiscrepancyType.PLATFORM_VS_REGISTER, Severity.CRITICAL),
        _discrepancy(DiscrepancyType.REGISTER_VS_CUSTODIAN, Severity.HIGH),
    ])
    assert recs[0] == "URGENT: 1 critical discrepancies require immediate attention"
    assert "1 high-severity discrepancies should be resolved within 24 hours" in recs
    assert "Review trade execution and portfolio update processes" in recs
    assert "Verify custodial transfer completion and share register updates" in recs
