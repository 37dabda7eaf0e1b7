# Structured logging with multi-channel support
import structlog
from typing import Optional, Dict, Any

from core.config.settings import Settings
from .channels import LogChannel
from .enhanced_logging import (
    configure_enhanced_logging,
    reset_enhanced_logging,
    get_enhanced_logger,
    get_channel_logger,
    get_logging_statistics,
)


def configure_logging(settings: Settings) -> None:
    """Configure logging system (idempotent)."""
    configure_enhanced_logging(settings)


def reset_logging() -> None:
    """Drop the current logging configuration (used by tests and the CLI)."""
    reset_enhanced_logging()


def get_logger(name: str, component: Optional[str] = None) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return get_enhanced_logger(name, component)


def get_statistics() -> Dict[str, Any]:
    """Get logging system statistics."""
    return get_logging_statistics()


def _safe_channel_logger(name: str, channel: LogChannel) -> structlog.BoundLogger:
    return get_channel_logger(name, channel)


def get_settlement_logger_safe(name: str) -> structlog.BoundLogger:
    """Get a settlement logger safely."""
    return _safe_channel_logger(name, LogChannel.SETTLEMENT)


def get_custodian_logger_safe(name: str) -> structlog.BoundLogger:
    """Get a custodian logger safely."""
    return _safe_channel_logger(name, LogChannel.CUSTODIAN)


def get_reconciliation_logger_safe(name: str) -> structlog.BoundLogger:
    """Get a reconciliation logger safely."""
    return _safe_channel_logger(name, LogChannel.RECONCILIATION)


def get_monitoring_logger_safe(name: str) -> structlog.BoundLogger:
    """Get a monitoring logger safely."""
    return _safe_channel_logger(name, LogChannel.MONITORING)


def get_audit_logger_safe(name: str) -> structlog.BoundLogger:
    """Get an audit logger safely."""
    return _safe_channel_logger(name, LogChannel.AUDIT)


def get_error_logger_safe(name: str) -> structlog.BoundLogger:
    """Get an error logger safely."""
    return _safe_channel_logger(name, LogChannel.ERROR)


def get_database_logger_safe(name: str) -> structlog.BoundLogger:
    """Get a database logger safely."""
    return _safe_channel_logger(name, LogChannel.DATABASE)


def get_api_logger_safe(name: str) -> structlog.BoundLogger:
    """Get an API logger safely."""
    return _safe_channel_logger(name, LogChannel.API)


__all__ = [
    "LogChannel",
    "configure_logging",
    "reset_logging",
    "get_logger",
    "get_statistics",
    "get_channel_logger",
    "get_settlement_logger_safe",
    "get_custodian_logger_safe",
    "get_reconciliation_logger_safe",
    "get_monitoring_logger_safe",
    "get_audit_logger_safe",
    "get_error_logger_safe",
    "get_database_logger_safe",
    "get_api_logger_safe",
]
