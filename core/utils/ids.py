"""
Centralized identifier generation.

Transfer, report and custodian reference ids share one shape:
a fixed prefix, the creation time in epoch milliseconds and a random
suffix, upper-cased. Keeping them here allows future swaps to a stronger
scheme without touching call sites.
"""

from __future__ import annotations

import secrets
import string
import time
from uuid import uuid4

_BASE36 = string.digits + string.ascii_lowercase


def _epoch_ms() -> int:
    return int(time.time() * 1000)


def _base36(length: int) -> str:
    return "".join(secrets.choice(_BASE36) for _ in range(length))


def generate_transfer_id() -> str:
    """TXF-<epoch ms>-<8 hex chars>"""
    return f"TXF-{_epoch_ms()}-{secrets.token_hex(4)}".upper()


def generate_report_id() -> str:
    """REC-<epoch ms>-<6 base36 chars>"""
    return f"REC-{_epoch_ms()}-{_base36(6)}".upper()


def generate_custodian_reference() -> str:
    """CUST-<12 hex chars>, as issued by the simulated custodian"""
    return f"CUST-{secrets.token_hex(6)}".upper()


def generate_entity_id() -> str:
    """Opaque id for trades, products and users created locally"""
    return uuid4().hex


def custodian_account_number(prefix: str, user_id: str) -> str:
    """Custodian account for a user: prefix + last 8 chars of the user id."""
    return f"{prefix}{str(user_id)[-8:].upper()}"
