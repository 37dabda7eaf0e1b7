"""
Log channels of the custody ledger. Each channel writes its own rotating
file; settlement, custodian and audit files are kept longest.
"""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict


class LogChannel(str, Enum):
    APPLICATION = "application"
    SETTLEMENT = "settlement"          # pipelines, ledger and portfolio writes
    CUSTODIAN = "custodian"            # gateway traffic
    RECONCILIATION = "reconciliation"
    MONITORING = "monitoring"          # stuck-transfer sweeps
    DATABASE = "database"
    API = "api"
    AUDIT = "audit"                    # state transitions, corrections
    ERROR = "error"                    # every ERROR+ record


@dataclass(frozen=True)
class ChannelConfig:
    filename: str
    level: str = "INFO"
    max_bytes: str = "50MB"
    backup_count: int = 5

    def path_in(self, logs_dir: str) -> Path:
        return Path(logs_dir) / self.filename


CHANNEL_CONFIGS: Dict[LogChannel, ChannelConfig] = {
    LogChannel.APPLICATION: ChannelConfig("application.log", max_bytes="100MB", backup_count=10),
    LogChannel.SETTLEMENT: ChannelConfig("settlement.log", backup_count=20),
    LogChannel.CUSTODIAN: ChannelConfig("custodian.log", backup_count=20),
    LogChannel.RECONCILIATION: ChannelConfig("reconciliation.log", backup_count=20),
    LogChannel.MONITORING: ChannelConfig("monitoring.log", backup_count=10),
    LogChannel.DATABASE: ChannelConfig("database.log", level="WARNING"),
    LogChannel.API: ChannelConfig("api.log", backup_count=10),
    LogChannel.AUDIT: ChannelConfig("audit.log", max_bytes="100MB", backup_count=50),
    LogChannel.ERROR: ChannelConfig("error.log", level="ERROR", backup_count=20),
}

# Component names used with get_logger(component=...) -> channel
COMPONENT_CHANNELS: Dict[str, LogChannel] = {
    "transfers": LogChannel.SETTLEMENT,
    "settlement": LogChannel.SETTLEMENT,
    "settlement_service": LogChannel.SETTLEMENT,
    "ledger": LogChannel.SETTLEMENT,
    "portfolio": LogChannel.SETTLEMENT,
    "custodian": LogChannel.CUSTODIAN,
    "reconciliation": LogChannel.RECONCILIATION,
    "reconciliation_service": LogChannel.RECONCILIATION,
    "monitoring": LogChannel.MONITORING,
    "transfer_monitor_service": LogChannel.MONITORING,
    "database": LogChannel.DATABASE,
    "api": LogChannel.API,
    "audit": LogChannel.AUDIT,
}


def channel_for_component(component: str) -> LogChannel:
    return COMPONENT_CHANNELS.get(component, LogChannel.APPLICATION)


def parse_size(size: str) -> int:
    """'50MB' -> bytes. Plain integers are taken as bytes."""
    size = size.upper().rstrip("B")
    for suffix, factor in (("K", 1024), ("M", 1024 ** 2), ("G", 1024 ** 3)):
        if size.endswith(suffix):
            return int(float(size[:-1]) * factor)
    return int(size)
