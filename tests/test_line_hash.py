from __future__ import annotations

import hashlib
from decimal import Decimal

from spend_stream.modules.ingestion.hashing import format_amount, line_hash


def test_line_hash_is_sha256_of_date_description_amount():
    expected = hashlib.sha256(b"2024-01-01-Coffee purchase-5.5").hexdigest()
    assert line_hash("2024-01-01", "Coffee purchase", Decimal("5.50")) == expected


def test_line_hash_is_deterministic_and_distinguishes_fields():
    base = line_hash("2024-01-01", "Coffee", Decimal("5.00"))
    assert base == line_hash("2024-01-01", "Coffee", Decimal("5.0"))
    assert base != line_hash("2024-01-02", "Coffee", Decimal("5.00"))
    assert base != line_hash("2024-01-01", "Latte", Decimal("5.00"))
    assert base != line_hash("2024-01-01", "Coffee", Decimal("5.01"))


def test_format_amount_matches_plain_number_rendering():
    assert format_amount(Decimal("12.00")) == "12"
    assert format_amount(Decimal("12.30")) == "12.3"
    assert format_amount(Decimal("1000")) == "1000"
    assert format_amount(Decimal("-0.00")) == "0"
