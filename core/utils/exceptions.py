# Structured exception hierarchy for the custody ledger

from typing import Dict, Any, Optional
from datetime import datetime, timezone


class CustodyLedgerException(Exception):
    """Base exception for all custody ledger specific errors"""

    error_code = "InternalError"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None,
                 correlation_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.correlation_id = correlation_id
        self.timestamp = datetime.now(timezone.utc)


class TransientError(CustodyLedgerException):
    """Base class for transient errors that are retried on the next monitor cycle"""

    def __init__(self, message: str, retry_count: int = 0, max_retries: int = 3,
                 details: Optional[Dict[str, Any]] = None, correlation_id: Optional[str] = None):
        super().__init__(message, details, correlation_id)
        self.retry_count = retry_count
        self.max_retries = max_retries
        self.retryable = retry_count < max_retries


class PermanentError(CustodyLedgerException):
    """Base class for permanent errors that must not be retried"""
    pass


# Ownership and ledger errors
class InsufficientSharesError(PermanentError):
    """Holder's active ledger quantity does not cover the requested transfer"""

    error_code = "InsufficientShares"

    def __init__(self, message: str, owner_id: str, product_id: str,
                 requested: int, available: int, **kwargs):
        super().__init__(message, **kwargs)
        self.owner_id = owner_id
        self.product_id = product_id
        self.requested = requested
        self.available = available


class OwnershipMismatchError(PermanentError):
    """Ledger and custodian disagree about a holder's position"""

    error_code = "OwnershipMismatch"

    def __init__(self, message: str, owner_id: str, product_id: str,
                 ledger_quantity: int, custodian_quantity: int, **kwargs):
        super().__init__(message, **kwargs)
        self.owner_id = owner_id
        self.product_id = product_id
        self.ledger_quantity = ledger_quantity
        self.custodian_quantity = custodian_quantity


class PortfolioStateError(PermanentError):
    """Portfolio holding cannot absorb a settlement mutation"""

    error_code = "PortfolioState"

    def __init__(self, message: str, user_id: str, product_id: str, **kwargs):
        super().__init__(message, **kwargs)
        self.user_id = user_id
        self.product_id = product_id


# Transfer lifecycle errors
class InvalidTransferStateError(PermanentError):
    """Transition not permitted from the transfer's current status"""

    error_code = "InvalidTransferState"

    def __init__(self, message: str, transfer_id: str, current_status: Optional[str],
                 action: str, **kwargs):
        super().__init__(message, **kwargs)
        self.transfer_id = transfer_id
        self.current_status = current_status
        self.action = action


class ActiveTransferExistsError(PermanentError):
    """A trade already has a non-terminal custodial transfer"""

    error_code = "ActiveTransferExists"

    def __init__(self, message: str, trade_id: str, transfer_id: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.trade_id = trade_id
        self.transfer_id = transfer_id


class TradeStateError(PermanentError):
    """Trade is not in a state that allows the requested operation"""

    error_code = "TradeState"

    def __init__(self, message: str, trade_id: str, status: str, **kwargs):
        super().__init__(message, **kwargs)
        self.trade_id = trade_id
        self.status = status


class SettlementRollbackError(PermanentError):
    """Ledger/portfolio mutation failed after the custodian confirmed; nothing was applied"""

    error_code = "SettlementRollback"

    def __init__(self, message: str, transfer_id: str, phase: str,
                 cause: Optional[Exception] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.transfer_id = transfer_id
        self.phase = phase
        self.cause = cause


# Lookup errors
class NotFoundError(PermanentError):
    """Base class for missing entities"""

    error_code = "NotFound"


class TransferNotFoundError(NotFoundError):
    error_code = "TransferNotFound"

    def __init__(self, message: str, transfer_id: str, **kwargs):
        super().__init__(message, **kwargs)
        self.transfer_id = transfer_id


class TradeNotFoundError(NotFoundError):
    error_code = "TradeNotFound"

    def __init__(self, message: str, trade_id: str, **kwargs):
        super().__init__(message, **kwargs)
        self.trade_id = trade_id


class ProductNotFoundError(NotFoundError):
    error_code = "ProductNotFound"

    def __init__(self, message: str, product_id: str, **kwargs):
        super().__init__(message, **kwargs)
        self.product_id = product_id


# Custodian integration errors
class CustodianError(TransientError):
    """Base class for custodian integration errors"""

    error_code = "CustodianError"

    def __init__(self, message: str, custodian: str, operation: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.custodian = custodian
        self.operation = operation


class CustodianUnavailableError(CustodianError):
    """Custodian unreachable or answering with server errors"""

    error_code = "CustodianUnavailable"


class CustodianTimeoutError(CustodianError):
    """Custodian did not answer within the configured timeout"""

    error_code = "CustodianTimeout"


class CustodianRejectedError(PermanentError):
    """Custodian refused the request (4xx); retrying will not help"""

    error_code = "CustodianRejected"

    def __init__(self, message: str, custodian: str, operation: Optional[str] = None,
                 status_code: Optional[int] = None,
                 response: Optional[Dict[str, Any]] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.custodian = custodian
        self.operation = operation
        self.status_code = status_code
        self.response = response or {}


# Configuration Errors
class ConfigurationError(PermanentError):
    """Configuration validation errors"""

    error_code = "Configuration"

    def __init__(self, message: str, config_field: str, config_value: Any,
                 **kwargs):
        super().__init__(message, **kwargs)
        self.config_field = config_field
        self.config_value = config_value


def is_retryable_error(error: Exception) -> bool:
    """
    Determine if an error should be retried

    Returns:
        True if error is transient and retryable, False otherwise
    """
    if isinstance(error, TransientError):
        return error.retryable
    return False


def error_code_for(error: Exception) -> str:
    """Stable reason string for an error, safe to show to callers"""
    if isinstance(error, CustodyLedgerException):
        return error.error_code
    return "InternalError"


def create_error_context(error: Exception, operation: str,
                         additional_context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Create structured error context for logging and monitoring

    Args:
        error: The exception that occurred
        operation: The operation that failed
        additional_context: Additional context information

    Returns:
        Structured error context dictionary
    """
    context = {
        "error_type": type(error).__name__,
        "error_code": error_code_for(error),
        "error_message": str(error),
        "operation": operation,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "retryable": is_retryable_error(error)
    }

    if isinstance(error, CustodyLedgerException):
        if error.correlation_id:
            context["correlation_id"] = error.correlation_id
        if error.details:
            context["error_details"] = error.details

        if isinstance(error, TransientError):
            context["retry_count"] = error.retry_count
            context["max_retries"] = error.max_retries

        if isinstance(error, (CustodianError, CustodianRejectedError)):
            context["custodian"] = error.custodian
            context["custodian_operation"] = error.operation

        if isinstance(error, SettlementRollbackError):
            context["transfer_id"] = error.transfer_id
            context["phase"] = error.phase

        if isinstance(error, InvalidTransferStateError):
            context["transfer_id"] = error.transfer_id
            context["current_status"] = error.current_status
            context["action"] = error.action

    if additional_context:
        context.update(additional_context)

    return context
