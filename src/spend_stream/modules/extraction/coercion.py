"""
Coercion ladder for model-produced transaction candidates.

Every raw element the model emits becomes exactly one ``ExtractedCandidate``:

* ``STRICT``: the element already has the expected shape and types.
* ``COERCED``: the element (or the JSON inside a string element) was an
  object of the wrong shape; fields are cast one by one.
* ``PLACEHOLDER``: nothing usable; an empty record stands in for it.

No step here raises.
"""

from __future__ import annotations

import enum
import json
import math
from collections.abc import Collection
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError

from spend_stream.core.config import settings

OTHER = "Other"
# Amounts are stored as Numeric(12, 2); anything this large is model noise.
MAX_AMOUNT = Decimal("1e10")


class CandidateVariant(str, enum.Enum):
    STRICT = "strict"
    COERCED = "coerced"
    PLACEHOLDER = "placeholder"


@dataclass(frozen=True)
class ExtractedCandidate:
    date: str
    description: str
    merchant: str
    category: str
    original_amount: Decimal
    original_currency: str
    variant: CandidateVariant


class _StrictCandidate(BaseModel):
    model_config = ConfigDict(strict=True)

    date: str
    description: str
    merchant: str
    category: str
    original_amount: float
    original_currency: str


def _pick_category(raw: Any, categories: Collection[str]) -> str:
    value = str(raw) if raw is not None else ""
    return value if value in categories else OTHER


def _as_text(raw: Any) -> str:
    if raw is None or raw is False or raw == "" or raw == 0:
        return ""
    return str(raw)


def _as_amount(raw: Any) -> Decimal:
    if isinstance(raw, bool) or raw is None:
        return Decimal("0")
    if isinstance(raw, float) and not math.isfinite(raw):
        return Decimal("0")
    try:
        value = Decimal(str(raw).strip()) if isinstance(raw, str) else Decimal(str(raw))
    except (InvalidOperation, ValueError):
        return Decimal("0")
    if not value.is_finite() or abs(value) >= MAX_AMOUNT:
        return Decimal("0")
    return value


def _placeholder(description: str) -> ExtractedCandidate:
    return ExtractedCandidate(
        date="",
        description=description,
        merchant="",
        category=OTHER,
        original_amount=Decimal("0"),
        original_currency=settings.base_currency,
        variant=CandidateVariant.PLACEHOLDER,
    )


def _strict(data: dict[str, Any], categories: Collection[str]) -> ExtractedCandidate | None:
    try:
        parsed = _StrictCandidate.model_validate(data)
    except ValidationError:
        return None
    if not math.isfinite(parsed.original_amount):
        return None
    amount = Decimal(str(parsed.original_amount))
    if abs(amount) >= MAX_AMOUNT:
        return None
    return ExtractedCandidate(
        date=parsed.date,
        description=parsed.description,
        merchant=parsed.merchant,
        category=_pick_category(parsed.category, categories),
        original_amount=amount,
        original_currency=parsed.original_currency,
        variant=CandidateVariant.STRICT,
    )


def _coerce_fields(data: dict[str, Any], categories: Collection[str]) -> ExtractedCandidate:
    return ExtractedCandidate(
        date=_as_text(data.get("date")),
        description=_as_text(data.get("description")),
        merchant=_as_text(data.get("merchant")),
        category=_pick_category(data.get("category"), categories),
        original_amount=_as_amount(data.get("original_amount")),
        original_currency=_as_text(data.get("original_currency")) or settings.base_currency,
        variant=CandidateVariant.COERCED,
    )


def coerce_candidate(raw: Any, categories: Collection[str]) -> ExtractedCandidate:
    """Run one raw element through the ladder; the first tier that fits wins."""
    if isinstance(raw, dict):
        return _strict(raw, categories) or _coerce_fields(raw, categories)

    if isinstance(raw, str):
        try:
            parsed = json.loads(raw)
        except (ValueError, RecursionError):
            return _placeholder("Invalid JSON")
        if isinstance(parsed, dict):
            return _strict(parsed, categories) or _coerce_fields(parsed, categories)
        return _coerce_fields({}, categories)

    return _placeholder("Unknown data type")
