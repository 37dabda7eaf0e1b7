from decimal import Decimal

import pytest

from core.trading.models import Trade, TradeStatus
from core.utils.exceptions import TradeStateError


def _trade(**overrides) -> Trade:
    values = dict(buyer_id="b", seller_id="s", product_id="p", quantity=40, price_per_share=Decimal("12.50"))
    values.update(overrides)
    return Trade(**values)


def test_total_amount():
    assert _trade().total_amount == Decimal("500.00")


def test_settle_and_fail_rules():
    trade = _trade()
    assert trade.can_settle()
    trade.settle()
    assert trade.status == TradeStatus.SETTLED
    assert trade.settled_at is not None
    with pytest.raises(TradeStateError):
        trade.settle()
    with pytest.raises(TradeStateError):
        trade.fail("too late")


def test_failure_reason_is_truncated():
    trade = _trade()
    trade.fail("x" * 600)
    assert trade.status == TradeStatus.FAILED
    assert len(trade.failure_reason) == 500
    assert not trade.can_settle()


def test_quantity_must_be_positive():
    with pytest.raises(ValueError):
        _trade(quantity=0)
