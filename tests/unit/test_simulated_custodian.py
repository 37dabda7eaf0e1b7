from decimal import Decimal

import pytest

from core.utils.exceptions import CustodianRejectedError, CustodianUnavailableError
from services.custodian.models import CustodianTransferStatus, TransferRequest
from services.custodian.simulated import SIMULATED_FEES, SimulatedCustodianGateway


def _request(quantity: int = 40) -> TransferRequest:
    return TransferRequest(
        transfer_id="TXF-1", trade_id="T-1", from_account="AIMSELLER", to_account="AIMBUYER",
        product_id="p-1", product_symbol="ACME", quantity=quantity, price_per_share=Decimal("10"),
    )


@pytest.fixture
def custodian():
    gateway = SimulatedCustodianGateway()
    gateway.set_balance("AIMSELLER", "ACME", 100)
    return gateway


async def test_full_lifecycle_moves_balances(custodian):
    reference = (await custodian.initiate(_request())).custodian_reference
    submitted = await custodian.submit(reference)
    await custodian.confirm(reference)
    await custodian.settle(reference)

    assert submitted.status == CustodianTransferStatus.SUBMITTED
    assert submitted.fees == SIMULATED_FEES
    assert custodian.status_of(reference) == CustodianTransferStatus.SETTLED
    assert custodian.balances[("AIMSELLER", "ACME")] == 60
    assert custodian.balances[("AIMBUYER", "ACME")] == 40


async def test_confirm_and_settle_are_idempotent(custodian):
    reference = (await custodian.initiate(_request())).custodian_reference
    await custodian.submit(reference)
    await custodian.confirm(reference)
    await custodian.confirm(reference)
    await custodian.settle(reference)
    await custodian.settle(reference)

    assert custodian.balances[("AIMSELLER", "ACME")] == 60


async def test_settle_requires_confirmation(custodian):
    reference = (await custodian.initiate(_request())).custodian_reference
    with pytest.raises(CustodianRejectedError):
        await custodian.settle(reference)


async def test_settle_rejects_insufficient_custodian_balance(custodian):
    reference = (await custodian.initiate(_request(quantity=150))).custodian_reference
    await custodian.submit(reference)
    await custodian.confirm(reference)
    with pytest.raises(CustodianRejectedError) as exc_info:
        await custodian.settle(reference)
    assert exc_info.value.status_code == 422
    assert custodian.status_of(reference) == CustodianTransferStatus.CONFIRMED


async def test_forced_status_is_reported(custodian):
    reference = (await custodian.initiate(_request())).custodian_reference
    custodian.set_status(reference, CustodianTransferStatus.FAILED, "Account frozen")

    status = await custodian.poll_status(reference)
    assert status.status == CustodianTransferStatus.FAILED
    assert status.message == "Account frozen"
    with pytest.raises(CustodianRejectedError):
        await custodian.confirm(reference)


async def test_outage_and_one_shot_failures(custodian):
    custodian.set_unavailable()
    with pytest.raises(CustodianUnavailableError):
        await custodian.get_balances()
    custodian.set_unavailable(False)

    custodian.fail_next("initiate", CustodianRejectedError("invalid account", custodian="sim"))
    with pytest.raises(CustodianRejectedError):
        await custodian.initiate(_request())
    assert (await custodian.initiate(_request())).custodian_reference.startswith("CUST-")


async def test_unknown_reference(custodian):
    with pytest.raises(CustodianRejectedError) as exc_info:
        await custodian.poll_status("CUST-MISSING")
    assert exc_info.value.status_code == 404


async def test_balances_filtered_by_account(custodian):
    custodian.set_balance("AIMBUYER", "ACME", 5)
    balances = await custodian.get_balances("AIMBUYER")
    assert [(b.account, b.quantity) for b in balances] == [("AIMBUYER", 5)]
    assert len(await custodian.get_balances()) == 2
