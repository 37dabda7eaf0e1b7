"""
Startup configuration checks.

Every check runs and all findings are reported together, so an operator
sees everything that needs fixing in one pass. Only errors block startup.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List

from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine

from .settings import Environment, Settings

logger = logging.getLogger(__name__)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass
class ValidationResult:
    component: str
    message: str
    severity: str = "error"  # "error" or "warning"

    @property
    def is_valid(self) -> bool:
        return self.severity != "error"


class ConfigurationValidator:

    def __init__(self, settings: Settings, check_database: bool = True):
        self.settings = settings
        self.check_database = check_database
        self.validation_results: List[ValidationResult] = []

    def _error(self, component: str, message: str) -> None:
        self.validation_results.append(ValidationResult(component, message, "error"))

    def _warn(self, component: str, message: str) -> None:
        self.validation_results.append(ValidationResult(component, message, "warning"))

    @property
    def errors(self) -> List[ValidationResult]:
        return [r for r in self.validation_results if r.severity == "error"]

    @property
    def warnings(self) -> List[ValidationResult]:
        return [r for r in self.validation_results if r.severity == "warning"]

    async def validate_all(self) -> bool:
        """Run every check; True when no check produced an error."""
        logger.info("Starting configuration validation")
        self._validate_custodian_settings()
        self._validate_settlement_settings()
        self._validate_monitoring_settings()
        self._validate_logging_settings()
        if self.check_database:
            await self._validate_database_connection()

        for result in self.errors:
            logger.error(f"   ERROR [{result.component}]: {result.message}")
        for result in self.warnings:
            logger.warning(f"   WARNING [{result.component}]: {result.message}")

        if self.errors:
            logger.error(f"Configuration validation failed: {len(self.errors)} errors, "
                         f"{len(self.warnings)} warnings")
            return False
        logger.info(f"Configuration validation passed with {len(self.warnings)} warnings")
        return True

    def _validate_custodian_settings(self):
        custodian = self.settings.custodian
        if custodian.mode != "http":
            if self.settings.environment == Environment.PRODUCTION:
                self._warn("Custodian", "Simulated custodian configured in production")
            return

        if not custodian.api_url.startswith(("http://", "https://")):
            self._error("Custodian", f"Invalid custodian api_url: {custodian.api_url}")
        if self.settings.environment != Environment.DEVELOPMENT and not (custodian.api_key and custodian.api_secret):
            self._error("Custodian",
                        "CUSTODIAN__API_KEY and CUSTODIAN__API_SECRET are required for the http gateway")
        if custodian.timeout_seconds <= 0:
            self._error("Custodian", "Custodian timeout must be positive")

    def _validate_settlement_settings(self):
        settlement = self.settings.settlement
        if settlement.queue_maxsize < settlement.max_workers:
            self._warn("Settlement", "Settlement queue is smaller than the worker pool")
        if not settlement.verify_custodian_holdings:
            self._warn("Settlement", "Custodian holdings check disabled; only ledger balance gates transfers")

    def _validate_monitoring_settings(self):
        monitoring = self.settings.monitoring
        if monitoring.check_interval_seconds < 30:
            self._warn("Monitoring", "Monitor interval below 30 seconds may flood the custodian with status polls")
        if monitoring.alert_threshold_hours <= 0:
            self._error("Monitoring", "Stuck-transfer alert threshold must be positive")

    def _validate_logging_settings(self):
        if self.settings.logging.level.upper() not in LOG_LEVELS:
            self._error("Logging", f"Invalid log level: {self.settings.logging.level}")
        logs_path = Path(self.settings.logs_dir)
        if self.settings.logging.file_enabled and logs_path.exists() and not logs_path.is_dir():
            self._error("Logging", f"Logs path is not a directory: {logs_path}")

    async def _validate_database_connection(self):
        engine = None
        try:
            engine = create_async_engine(self.settings.database.url)
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except Exception as e:
            self._error("Database", f"Cannot connect to database: {e}")
        finally:
            if engine is not None:
                await engine.dispose()

    def get_validation_summary(self) -> Dict[str, Any]:
        return {
            "total_checks": len(self.validation_results),
            "errors": len(self.errors),
            "warnings": len(self.warnings),
            "is_valid": not self.errors,
            "error_details": [{"component": r.component, "message": r.message} for r in self.errors],
            "warning_details": [{"component": r.component, "message": r.message} for r in self.warnings],
        }


async def validate_startup_configuration(settings: Settings, check_database: bool = True) -> bool:
    """Run the startup checks; False means the process should not start."""
    return await ConfigurationValidator(settings, check_database=check_database).validate_all()
