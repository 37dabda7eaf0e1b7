import re

from core.utils.ids import (
    custodian_account_number,
    generate_custodian_reference,
    generate_report_id,
    generate_transfer_id,
)


def test_transfer_id_format():
    transfer_id = generate_transfer_id()
    assert re.fullmatch(r"TXF-\d{13}-[0-9A-F]{8}", transfer_id)


def test_report_id_format():
    assert re.fullmatch(r"REC-\d{13}-[0-9A-Z]{6}", generate_report_id())


def test_ids_are_unique():
    assert len({generate_transfer_id() for _ in range(200)}) == 200
    assert len({generate_custodian_reference() for _ in range(200)}) == 200


def test_account_number_uses_last_eight_chars():
    assert custodian_account_number("AIM", "user-seller-01") == "AIMELLER-01"
    assert custodian_account_number("AIM", "abc") == "AIMABC"
