from .models import LedgerEntry, LedgerEntryStatus, LedgerTransferResult, TransferHistoryItem
from .repository import ShareLedger

__all__ = [
    "LedgerEntry",
    "LedgerEntryStatus",
    "LedgerTransferResult",
    "ShareLedger",
    "TransferHistoryItem",
]
