from __future__ import annotations

import hashlib
from decimal import Decimal


def format_amount(amount: Decimal) -> str:
    """Shortest plain decimal text for an amount: ``5.00`` -> ``5``, ``12.30`` -> ``12.3``."""
    text = format(Decimal(amount).normalize(), "f")
    return "0" if text in {"-0", "0"} else text


def line_hash(transaction_date: str, description: str, amount: Decimal) -> str:
    """Idempotency key of one expense line: sha256 of ``date-description-amount``."""
    payload = f"{transaction_date}-{description}-{format_amount(amount)}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
