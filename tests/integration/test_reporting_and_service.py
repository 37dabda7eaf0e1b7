"""
Transfer reporting views and the settlement worker pool.
"""
from datetime import timedelta
from decimal import Decimal

import pytest

from core.trading.models import TradeStatus
from core.utils.exceptions import (
    CustodianRejectedError,
    TradeNotFoundError,
    TradeStateError,
    TransferNotFoundError,
)
from core.utils.time_utils import utc_now
from services.transfers.models import CustodialTransfer, StepStatus, TransferStatus, WorkflowStatus
from services.transfers.reporting import reconstruct_steps
from services.transfers.service import SettlementQueueFullError, SettlementService
from tests.fixtures.ledger_fixtures import (
    BUYER,
    OTHER,
    SELLER,
    build_components,
    load_trade,
    make_settings,
    seed_holding,
    seed_product,
    seed_trade,
)


async def _settled_and_failed(c):
    product = await seed_product(c)
    await seed_holding(c, SELLER, product, 100)
    ok = await c.orchestrator.execute_transfer((await seed_trade(c, product, 40)).trade_id)
    c.gateway.fail_next("submit", CustodianRejectedError("Account frozen", custodian="TestCustodian"))
    bad = await c.orchestrator.execute_transfer((await seed_trade(c, product, 10)).trade_id)
    return product, ok, bad


async def test_summary_counts_and_values(components):
    c = components
    product, ok, bad = await _settled_and_failed(c)

    summary = await c.reporting.summary()

    assert summary.total_transfers == 2
    assert summary.completed_transfers == 1
    assert summary.failed_transfers == 1
    assert summary.pending_transfers == 0
    assert summary.total_value == Decimal("625.00")
    assert summary.average_settlement_hours >= 0

    assert (await c.reporting.summary(product_id="other-product")).total_transfers == 0
    assert (await c.reporting.summary(end_date=utc_now() - timedelta(days=1))).total_transfers == 0


async def test_history_filters_by_participant(components):
    c = components
    product, ok, bad = await _settled_and_failed(c)

    seller_history = await c.reporting.history(user_id=SELLER)
    assert {t.transfer_id for t in seller_history} == {ok.transfer_id, bad.transfer_id}
    assert len(await c.reporting.history(user_id=BUYER, product_id=product.product_id)) == 2
    assert await c.reporting.history(user_id=OTHER) == []
    assert len(await c.reporting.history(limit=1)) == 1


async def test_unknown_transfer_lookups_raise(components):
    with pytest.raises(TransferNotFoundError):
        await components.reporting.get_transfer("TXF-missing")
    with pytest.raises(TransferNotFoundError):
        await components.reporting.audit_trail("TXF-missing")


def test_reconstructed_steps_follow_timestamps():
    now = utc_now()
    transfer = CustodialTransfer(
        transfer_id="TXF-1", trade_id="T-1", from_user_id=SELLER, to_user_id=BUYER,
        product_id="P-1", quantity=5, status=TransferStatus.CONFIRMED,
        created_at=now, submitted_at=now, confirmed_at=now,
    )

    steps = reconstruct_steps(transfer)

    assert [s.name for s in steps] == [
        "validate_ownership", "initiate_custodial_transfer",
        "submit_to_custodian", "confirm_custodial_transfer",
    ]
    assert all(s.status == StepStatus.COMPLETED for s in steps)


async def test_service_settles_accepted_trades(components):
    c = components
    product = await seed_product(c)
    await seed_holding(c, SELLER, product, 100)
    trade = await seed_trade(c, product, 40)
    service = SettlementService(c.settings, c.db, c.orchestrator, c.trades, c.metrics)

    await service.start()
    try:
        assert (await service.accept_trade(trade)).trade_id == trade.trade_id
        workflow = await service.settle(trade)
        status = service.get_status()
    finally:
        await service.stop()

    assert workflow.status == WorkflowStatus.COMPLETED
    assert (await load_trade(c, trade.trade_id)).status == TradeStatus.SETTLED
    assert status["workers"] == c.settings.settlement.max_workers
    assert status["queue_depth"] == 0


async def test_service_propagates_rejections(components):
    c = components
    service = SettlementService(c.settings, c.db, c.orchestrator, c.trades, c.metrics)
    product = await seed_product(c)
    ghost = await seed_trade(c, product, 5)
    async with c.db.transaction() as session:
        await c.trades.mark_failed(session, ghost.trade_id, "Cancelled upstream")

    await service.start()
    try:
        with pytest.raises(TradeStateError):
            await service.settle(ghost)
    finally:
        await service.stop()


async def test_full_queue_rejects_instead_of_waiting(tmp_path, db_manager, gateway, metrics):
    settings = make_settings(tmp_path, settlement={"max_workers": 1, "queue_maxsize": 1})
    c = build_components(settings, db_manager, gateway, metrics)
    product = await seed_product(c)
    await seed_holding(c, SELLER, product, 100)
    first = await seed_trade(c, product, 10)
    second = await seed_trade(c, product, 10)
    service = SettlementService(settings, db_manager, c.orchestrator, c.trades, metrics)

    await service.start()
    try:
        future = service.submit(first)
        with pytest.raises(SettlementQueueFullError):
            service.submit(second)
        workflow = await future
    finally:
        await service.stop()

    assert workflow.status == WorkflowStatus.COMPLETED


async def test_submit_requires_running_service(components):
    c = components
    service = SettlementService(c.settings, c.db, c.orchestrator, c.trades)
    product = await seed_product(c)
    trade = await seed_trade(c, product, 5)

    with pytest.raises(RuntimeError):
        service.submit(trade)


async def test_accept_trade_is_idempotent(components):
    c = components
    service = SettlementService(c.settings, c.db, c.orchestrator, c.trades)
    product = await seed_product(c)
    trade = await seed_trade(c, product, 5)

    again = await service.accept_trade(trade.model_copy(update={"quantity": 7}))

    assert again.quantity == 5
    with pytest.raises(TradeNotFoundError):
        await c.orchestrator.execute_transfer("unknown-trade")
