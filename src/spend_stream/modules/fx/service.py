from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation

import httpx
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from spend_stream.core.config import settings
from spend_stream.core.logging import get_logger, log_event
from spend_stream.modules.fx.models import FxRate

logger = get_logger(__name__)

CENT = Decimal("0.01")
_IDENTITY = Decimal("1")


@dataclass(frozen=True)
class Conversion:
    amount: Decimal
    rate: Decimal
    fallback: bool = False


def normalize_currency(code: str | None, *, default: str | None = None) -> str:
    clean = (code or "").strip().upper()
    return clean or (default or settings.base_currency)


def _valid_code(code: str) -> bool:
    return len(code) == 3 and code.isalpha()


def get_cached_rate(
    session: Session, *, from_currency: str, to_currency: str, as_of_date: date
) -> FxRate | None:
    return session.scalar(
        select(FxRate).where(
            FxRate.from_currency == from_currency,
            FxRate.to_currency == to_currency,
            FxRate.as_of_date == as_of_date,
        )
    )


def upsert_fx_rate(
    session: Session,
    *,
    from_currency: str,
    to_currency: str,
    as_of_date: date,
    rate: Decimal,
    source: str | None = None,
) -> FxRate:
    """Cache a rate. Flushes inside a savepoint, does not commit."""
    fx = get_cached_rate(
        session, from_currency=from_currency, to_currency=to_currency, as_of_date=as_of_date
    )
    if fx:
        fx.rate = rate
        fx.source = source
        session.add(fx)
        session.flush()
        return fx
    fx = FxRate(
        from_currency=from_currency,
        to_currency=to_currency,
        as_of_date=as_of_date,
        rate=rate,
        source=source,
    )
    try:
        with session.begin_nested():
            session.add(fx)
            session.flush()
    except IntegrityError:
        winner = get_cached_rate(
            session, from_currency=from_currency, to_currency=to_currency, as_of_date=as_of_date
        )
        if winner is None:
            raise
        return winner
    return fx


def convert_to_base(
    session: Session,
    *,
    amount: Decimal,
    currency: str,
    on_date: date | None,
    base_currency: str | None = None,
) -> Conversion:
    """Convert ``amount`` into the base currency at ``on_date``.

    Never raises for rate problems: an unknown currency, a missing date or an
    unreachable rate source all degrade to the identity rate.
    """
    base = normalize_currency(base_currency)
    source = normalize_currency(currency)
    amount = Decimal(amount)
    if source == base:
        return Conversion(amount=amount.quantize(CENT), rate=_IDENTITY)

    try:
        if not _valid_code(source):
            raise ValueError(f"Invalid currency code: {source!r}")
        if on_date is None:
            raise ValueError("Missing transaction date")
        cached = get_cached_rate(
            session, from_currency=source, to_currency=base, as_of_date=on_date
        )
        if cached:
            rate = Decimal(cached.rate)
        else:
            rate, _ = _fetch_frankfurter_rate(
                from_currency=source, to_currency=base, on_date=on_date
            )
            upsert_fx_rate(
                session,
                from_currency=source,
                to_currency=base,
                as_of_date=on_date,
                rate=rate,
                source="frankfurter.app",
            )
    except (httpx.HTTPError, ValueError, KeyError, InvalidOperation) as e:
        log_event(
            logger,
            "fx.rate.fallback",
            level=logging.WARNING,
            from_currency=source,
            to_currency=base,
            on_date=on_date.isoformat() if on_date else None,
            error_type=type(e).__name__,
            error=str(e),
        )
        return Conversion(amount=amount.quantize(CENT), rate=_IDENTITY, fallback=True)

    return Conversion(amount=(amount * rate).quantize(CENT), rate=rate)


def _fetch_frankfurter_rate(
    *, from_currency: str, to_currency: str, on_date: date
) -> tuple[Decimal, date]:
    from_currency = from_currency.strip().upper()
    to_currency = to_currency.strip().upper()
    if not _valid_code(from_currency):
        raise ValueError("Invalid from_currency")
    if not _valid_code(to_currency):
        raise ValueError("Invalid to_currency")
    if from_currency == to_currency:
        return _IDENTITY, on_date

    path = "latest" if on_date >= date.today() else on_date.isoformat()
    resp = httpx.get(
        f"{settings.fx_api_url.rstrip('/')}/{path}",
        params={"from": from_currency, "to": to_currency},
        timeout=settings.fx_timeout_seconds,
        follow_redirects=True,
    )
    resp.raise_for_status()
    data = resp.json()

    raw_rate = (data.get("rates") or {}).get(to_currency)
    raw_date = data.get("date")
    if raw_rate is None or not raw_date:
        raise ValueError("Unexpected FX response shape")
    return Decimal(str(raw_rate)), date.fromisoformat(str(raw_date))
