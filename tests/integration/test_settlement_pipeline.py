"""
End-to-end settlement pipeline against SQLite and the simulated custodian.
"""
import asyncio

import pytest

from core.trading.models import TradeStatus
from core.utils.exceptions import (
    ActiveTransferExistsError,
    CustodianRejectedError,
    CustodianUnavailableError,
    InvalidTransferStateError,
    TradeNotFoundError,
    TradeStateError,
)
from services.custodian.models import CustodianTransferStatus
from services.transfers.models import StepStatus, TransferStatus, WorkflowStatus
from services.transfers.orchestrator import PIPELINE_STEPS, STEP_SUBMIT, STEP_VALIDATE
from services.transfers.state_machine import PHASE_FINALIZE, PHASE_PORTFOLIO
from tests.fixtures.ledger_fixtures import (
    BUYER,
    SELLER,
    balances,
    build_components,
    load_trade,
    make_settings,
    seed_holding,
    seed_product,
    seed_trade,
)


def _sample(metrics, name, **labels):
    return metrics.registry.get_sample_value(name, labels) or 0.0


async def _transfer(c, transfer_id):
    return await c.state_machine.get(transfer_id)


async def test_happy_path_settles_everywhere(components):
    c = components
    product = await seed_product(c)
    await seed_holding(c, SELLER, product, 100)
    trade = await seed_trade(c, product, 40)

    workflow = await c.orchestrator.execute_transfer(trade.trade_id)

    assert workflow.status == WorkflowStatus.COMPLETED
    assert [s.name for s in workflow.steps] == list(PIPELINE_STEPS)
    assert all(s.status == StepStatus.COMPLETED for s in workflow.steps)
    assert workflow.error is None

    transfer = await _transfer(c, workflow.transfer_id)
    assert transfer.status == TransferStatus.SETTLED
    assert transfer.submitted_at and transfer.confirmed_at and transfer.settled_at
    assert transfer.metadata.custodian_name == "TestCustodian"
    assert transfer.metadata.account_numbers == {"from": c.account(SELLER), "to": c.account(BUYER)}

    assert await balances(c, SELLER, product) == (60, 60, 60)
    assert await balances(c, BUYER, product) == (40, 40, 40)
    async with c.db.get_session() as session:
        assert await c.ledger.total_active(session, product.product_id) == 100

    settled_trade = await load_trade(c, trade.trade_id)
    assert settled_trade.status == TradeStatus.SETTLED
    assert settled_trade.custodial_transfer_id == transfer.transfer_id
    assert c.gateway.status_of(transfer.custodian_reference) == CustodianTransferStatus.SETTLED

    assert _sample(c.metrics, "custody_workflows_total", outcome="completed") == 1
    assert _sample(c.metrics, "custody_transfer_transitions_total",
                   from_status="confirmed", to_status="settled") == 1


async def test_audit_trail_links_ledger_entries_and_steps(components):
    c = components
    product = await seed_product(c)
    await seed_holding(c, SELLER, product, 100)
    trade = await seed_trade(c, product, 40)
    workflow = await c.orchestrator.execute_transfer(trade.trade_id)

    trail = await c.reporting.audit_trail(workflow.transfer_id)

    assert trail.transfer.transfer_id == workflow.transfer_id
    assert trail.trade["trade_id"] == trade.trade_id
    owners = {entry["owner_id"] for entry in trail.ledger_entries}
    assert owners == {SELLER, BUYER}
    assert [s.name for s in trail.workflow_steps] == list(PIPELINE_STEPS)


async def test_register_shortfall_fails_despite_stale_portfolio(components):
    c = components
    product = await seed_product(c)
    await seed_holding(c, SELLER, product, 30)
    async with c.db.transaction() as session:
        await c.portfolios.add_holding(session, SELLER, product.product_id, 100, product.price_per_share)
    trade = await seed_trade(c, product, 50)

    workflow = await c.orchestrator.execute_transfer(trade.trade_id)

    assert workflow.status == WorkflowStatus.FAILED
    assert workflow.current_step == STEP_VALIDATE
    assert workflow.error_code == "InsufficientShares"
    assert workflow.transfer_id is None
    assert (await load_trade(c, trade.trade_id)).status == TradeStatus.FAILED
    assert await balances(c, SELLER, product) == (30, 130, 30)
    assert _sample(c.metrics, "custody_workflow_step_failures_total",
                   step=STEP_VALIDATE, error_code="InsufficientShares") == 1


async def test_custodian_disagreement_blocks_transfer(components):
    c = components
    product = await seed_product(c)
    await seed_holding(c, SELLER, product, 100, custodian=90)
    trade = await seed_trade(c, product, 40)

    workflow = await c.orchestrator.execute_transfer(trade.trade_id)

    assert workflow.status == WorkflowStatus.FAILED
    assert workflow.error_code == "OwnershipMismatch"
    assert not any(op == "initiate" for op, _ in c.gateway.calls)
    assert (await load_trade(c, trade.trade_id)).status == TradeStatus.FAILED


async def test_self_trade_fails_before_any_custodian_call(components):
    c = components
    product = await seed_product(c)
    await seed_holding(c, SELLER, product, 100)
    trade = await seed_trade(c, product, 40, seller=SELLER, buyer=SELLER)

    workflow = await c.orchestrator.execute_transfer(trade.trade_id)

    assert workflow.status == WorkflowStatus.FAILED
    assert workflow.current_step == STEP_VALIDATE
    assert workflow.error_code == "TradeState"
    assert workflow.transfer_id is None
    assert c.gateway.calls == []
    assert (await load_trade(c, trade.trade_id)).status == TradeStatus.FAILED
    assert await balances(c, SELLER, product) == (100, 100, 100)


async def test_custodian_check_can_be_disabled(tmp_path, db_manager, gateway, metrics):
    settings = make_settings(tmp_path, settlement={"verify_custodian_holdings": False})
    c = build_components(settings, db_manager, gateway, metrics)
    product = await seed_product(c)
    await seed_holding(c, SELLER, product, 100, custodian=90)
    trade = await seed_trade(c, product, 40)

    workflow = await c.orchestrator.execute_transfer(trade.trade_id)

    assert workflow.status == WorkflowStatus.COMPLETED
    assert await balances(c, SELLER, product) == (60, 60, 50)


async def test_rejection_at_submit_fails_transfer_and_trade(components):
    c = components
    product = await seed_product(c)
    await seed_holding(c, SELLER, product, 100)
    trade = await seed_trade(c, product, 40)
    c.gateway.fail_next("submit", CustodianRejectedError("Account frozen", custodian="TestCustodian",
                                                         operation="submit", status_code=422))

    workflow = await c.orchestrator.execute_transfer(trade.trade_id)

    assert workflow.status == WorkflowStatus.FAILED
    assert workflow.current_step == STEP_SUBMIT
    assert workflow.error_code == "CustodianRejected"
    transfer = await _transfer(c, workflow.transfer_id)
    assert transfer.status == TransferStatus.FAILED
    assert "Account frozen" in transfer.failure_reason
    assert (await load_trade(c, trade.trade_id)).status == TradeStatus.FAILED
    assert await balances(c, SELLER, product) == (100, 100, 100)


async def test_transient_initiation_failure_leaves_trade_settleable(components):
    c = components
    product = await seed_product(c)
    await seed_holding(c, SELLER, product, 100)
    trade = await seed_trade(c, product, 40)
    c.gateway.fail_next("initiate", CustodianUnavailableError("Custodian down", custodian="TestCustodian"))

    first = await c.orchestrator.execute_transfer(trade.trade_id)

    assert first.status == WorkflowStatus.FAILED
    assert first.error_code == "CustodianUnavailable"
    assert (await _transfer(c, first.transfer_id)).status == TransferStatus.FAILED
    assert (await load_trade(c, trade.trade_id)).status == TradeStatus.PENDING

    second = await c.orchestrator.execute_transfer(trade.trade_id)

    assert second.status == WorkflowStatus.COMPLETED
    assert second.transfer_id != first.transfer_id
    settled = await load_trade(c, trade.trade_id)
    assert settled.status == TradeStatus.SETTLED
    assert settled.custodial_transfer_id == second.transfer_id


async def test_open_transfer_blocks_a_second_run(components):
    c = components
    product = await seed_product(c)
    await seed_holding(c, SELLER, product, 100)
    trade = await seed_trade(c, product, 40)
    c.gateway.fail_next("submit", CustodianUnavailableError("Custodian down", custodian="TestCustodian"))

    workflow = await c.orchestrator.execute_transfer(trade.trade_id)
    assert workflow.status == WorkflowStatus.FAILED
    assert (await _transfer(c, workflow.transfer_id)).status == TransferStatus.PENDING

    with pytest.raises(ActiveTransferExistsError):
        await c.orchestrator.execute_transfer(trade.trade_id)


async def test_concurrent_runs_for_one_trade_produce_one_transfer(components):
    c = components
    product = await seed_product(c)
    await seed_holding(c, SELLER, product, 100)
    trade = await seed_trade(c, product, 40)

    results = await asyncio.gather(
        c.orchestrator.execute_transfer(trade.trade_id),
        c.orchestrator.execute_transfer(trade.trade_id),
        return_exceptions=True,
    )

    workflows = [r for r in results if not isinstance(r, Exception)]
    errors = [r for r in results if isinstance(r, Exception)]
    assert len(workflows) == 1 and workflows[0].status == WorkflowStatus.COMPLETED
    assert len(errors) == 1 and isinstance(errors[0], ActiveTransferExistsError)
    async with c.db.get_session() as session:
        assert len(await c.transfers.list_for_trade(session, trade.trade_id)) == 1
    assert await balances(c, BUYER, product) == (40, 40, 40)


async def test_settled_and_unknown_trades_are_rejected(components):
    c = components
    product = await seed_product(c)
    await seed_holding(c, SELLER, product, 100)
    trade = await seed_trade(c, product, 40)
    await c.orchestrator.execute_transfer(trade.trade_id)

    with pytest.raises(TradeStateError):
        await c.orchestrator.execute_transfer(trade.trade_id)
    with pytest.raises(TradeNotFoundError):
        await c.orchestrator.execute_transfer("no-such-trade")


async def test_portfolio_failure_rolls_back_and_retry_settles(components):
    c = components
    product = await seed_product(c)
    await seed_holding(c, SELLER, product, 100, portfolio=False)
    trade = await seed_trade(c, product, 40)

    workflow = await c.orchestrator.execute_transfer(trade.trade_id)

    assert workflow.status == WorkflowStatus.FAILED
    assert workflow.current_step == PHASE_PORTFOLIO
    assert workflow.error_code == "SettlementRollback"
    transfer = await _transfer(c, workflow.transfer_id)
    assert transfer.status == TransferStatus.CONFIRMED
    assert await balances(c, SELLER, product) == (100, 0, 100)
    assert await balances(c, BUYER, product) == (0, 0, 0)
    assert (await load_trade(c, trade.trade_id)).status == TradeStatus.PENDING
    assert c.gateway.status_of(transfer.custodian_reference) == CustodianTransferStatus.CONFIRMED
    assert _sample(c.metrics, "custody_settlement_rollbacks_total", phase=PHASE_PORTFOLIO) == 1

    async with c.db.transaction() as session:
        await c.portfolios.add_holding(session, SELLER, product.product_id, 100, product.price_per_share)
    settled = await c.orchestrator.retry_settlement(transfer.transfer_id)

    assert settled.status == TransferStatus.SETTLED
    assert await balances(c, SELLER, product) == (60, 60, 60)
    assert await balances(c, BUYER, product) == (40, 40, 40)
    assert (await load_trade(c, trade.trade_id)).status == TradeStatus.SETTLED


async def test_custodian_refusing_settle_rolls_back_register(components):
    c = components
    product = await seed_product(c)
    await seed_holding(c, SELLER, product, 100)
    trade = await seed_trade(c, product, 40)
    c.gateway.fail_next("settle", CustodianRejectedError("Settlement window closed",
                                                         custodian="TestCustodian", operation="settle"))

    workflow = await c.orchestrator.execute_transfer(trade.trade_id)

    assert workflow.current_step == PHASE_FINALIZE
    assert workflow.step(PHASE_FINALIZE).status == StepStatus.FAILED
    assert (await _transfer(c, workflow.transfer_id)).status == TransferStatus.CONFIRMED
    assert await balances(c, SELLER, product) == (100, 100, 100)
    assert _sample(c.metrics, "custody_settlement_rollbacks_total", phase=PHASE_FINALIZE) == 1


async def test_transient_settle_failure_is_not_a_rollback(components):
    c = components
    product = await seed_product(c)
    await seed_holding(c, SELLER, product, 100)
    trade = await seed_trade(c, product, 40)
    c.gateway.fail_next("settle", CustodianUnavailableError("Custodian down", custodian="TestCustodian"))

    workflow = await c.orchestrator.execute_transfer(trade.trade_id)

    assert workflow.status == WorkflowStatus.FAILED
    assert workflow.error_code == "CustodianUnavailable"
    assert (await _transfer(c, workflow.transfer_id)).status == TransferStatus.CONFIRMED
    assert await balances(c, SELLER, product) == (100, 100, 100)
    assert _sample(c.metrics, "custody_settlement_rollbacks_total", phase=PHASE_FINALIZE) == 0


async def test_settle_only_from_confirmed(components):
    c = components
    product = await seed_product(c)
    await seed_holding(c, SELLER, product, 100)
    trade = await seed_trade(c, product, 40)
    c.gateway.fail_next("confirm", CustodianUnavailableError("Custodian down", custodian="TestCustodian"))
    workflow = await c.orchestrator.execute_transfer(trade.trade_id)
    assert (await _transfer(c, workflow.transfer_id)).status == TransferStatus.SUBMITTED

    with pytest.raises(InvalidTransferStateError):
        await c.state_machine.settle(workflow.transfer_id)

    assert (await _transfer(c, workflow.transfer_id)).status == TransferStatus.SUBMITTED
    assert await balances(c, SELLER, product) == (100, 100, 100)
    assert _sample(c.metrics, "custody_invalid_transitions_total", action="settle") == 1


async def test_stale_compare_and_set_loses(components):
    c = components
    product = await seed_product(c)
    await seed_holding(c, SELLER, product, 100)
    trade = await seed_trade(c, product, 40)
    c.gateway.fail_next("submit", CustodianUnavailableError("Custodian down", custodian="TestCustodian"))
    workflow = await c.orchestrator.execute_transfer(trade.trade_id)

    async with c.db.transaction() as session:
        won = await c.transfers.compare_and_set(session, workflow.transfer_id,
                                                TransferStatus.SUBMITTED, TransferStatus.CONFIRMED)
    assert won is False

    await c.state_machine.fail(workflow.transfer_id, "Operator abort", fail_trade=False)
    with pytest.raises(InvalidTransferStateError):
        await c.state_machine.submit(workflow.transfer_id)
    transfer = await _transfer(c, workflow.transfer_id)
    assert transfer.status == TransferStatus.FAILED
    assert transfer.failure_reason == "Operator abort"
