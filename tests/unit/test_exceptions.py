from core.utils.exceptions import (
    ActiveTransferExistsError,
    CustodianRejectedError,
    CustodianTimeoutError,
    CustodianUnavailableError,
    InsufficientSharesError,
    InvalidTransferStateError,
    PermanentError,
    SettlementRollbackError,
    TransferNotFoundError,
    TransientError,
    create_error_context,
    error_code_for,
    is_retryable_error,
)


def test_custodian_outages_are_transient_and_rejections_permanent():
    unavailable = CustodianUnavailableError("down", custodian="c", operation="submit")
    timeout = CustodianTimeoutError("slow", custodian="c", operation="poll_status")
    rejected = CustodianRejectedError("no", custodian="c", operation="initiate", status_code=400)

    assert isinstance(unavailable, TransientError)
    assert isinstance(timeout, TransientError)
    assert isinstance(rejected, PermanentError)
    assert is_retryable_error(unavailable)
    assert is_retryable_error(timeout)
    assert not is_retryable_error(rejected)


def test_retries_exhausted():
    error = CustodianUnavailableError("down", custodian="c", retry_count=3, max_retries=3)
    assert not is_retryable_error(error)


def test_error_codes_are_stable():
    assert error_code_for(InsufficientSharesError("x", owner_id="u", product_id="p",
                                                  requested=5, available=1)) == "InsufficientShares"
    assert error_code_for(ActiveTransferExistsError("x", trade_id="t")) == "ActiveTransferExists"
    assert error_code_for(TransferNotFoundError("x", transfer_id="t")) == "TransferNotFound"
    assert error_code_for(ValueError("boom")) == "InternalError"


def test_error_context_carries_domain_fields():
    error = InvalidTransferStateError("bad", transfer_id="TXF-1", current_status="settled",
                                      action="cancel", details={"source": "monitor"})
    context = create_error_context(error, "cancel_transfer", {"trade_id": "T-1"})

    assert context["error_type"] == "InvalidTransferStateError"
    assert context["error_code"] == "InvalidTransferState"
    assert context["operation"] == "cancel_transfer"
    assert context["retryable"] is False
    assert context["error_details"] == {"source": "monitor"}
    assert context["trade_id"] == "T-1"


def test_rollback_error_keeps_phase_and_cause():
    cause = RuntimeError("disk full")
    error = SettlementRollbackError("rolled back", transfer_id="TXF-1", phase="update_portfolios",
                                    cause=cause)
    assert error.phase == "update_portfolios"
    assert error.cause is cause
    assert error.timestamp.tzinfo is not None
