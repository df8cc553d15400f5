from __future__ import annotations

from datetime import date
from decimal import Decimal

import httpx
from sqlalchemy import select

from spend_stream.core.db import SessionLocal
from spend_stream.modules.fx import service as fx_service
from spend_stream.modules.fx.models import FxRate
from spend_stream.modules.fx.service import _fetch_frankfurter_rate as fetch_frankfurter_rate
from spend_stream.modules.fx.service import convert_to_base


def test_same_currency_is_identity():
    with SessionLocal() as session:
        result = convert_to_base(
            session, amount=Decimal("10.5"), currency="sgd", on_date=date(2024, 1, 1)
        )
    assert result.rate == Decimal("1")
    assert result.amount == Decimal("10.50")
    assert result.fallback is False


def test_rate_is_fetched_once_and_cached(monkeypatch):
    calls: list[tuple[str, str, date]] = []

    def _fake_fetch(*, from_currency, to_currency, on_date):
        calls.append((from_currency, to_currency, on_date))
        return Decimal("0.0091"), on_date

    monkeypatch.setattr(fx_service, "_fetch_frankfurter_rate", _fake_fetch)

    with SessionLocal() as session:
        first = convert_to_base(
            session, amount=Decimal("1000"), currency="JPY", on_date=date(2024, 2, 1)
        )
        session.commit()
        second = convert_to_base(
            session, amount=Decimal("2000"), currency="JPY", on_date=date(2024, 2, 1)
        )
        cached = session.scalar(select(FxRate).where(FxRate.from_currency == "JPY"))

    assert calls == [("JPY", "SGD", date(2024, 2, 1))]
    assert first.amount == Decimal("9.10")
    assert second.amount == Decimal("18.20")
    assert cached.source == "frankfurter.app"


def test_unreachable_rate_source_degrades_to_identity():
    # The autouse fixture makes the rate source unreachable.
    with SessionLocal() as session:
        result = convert_to_base(
            session, amount=Decimal("25"), currency="EUR", on_date=date(2024, 2, 1)
        )
    assert result.fallback is True
    assert result.rate == Decimal("1")
    assert result.amount == Decimal("25.00")


def test_invalid_currency_code_degrades_to_identity(monkeypatch):
    def _never(**_):
        raise AssertionError("should not fetch")

    monkeypatch.setattr(fx_service, "_fetch_frankfurter_rate", _never)
    with SessionLocal() as session:
        result = convert_to_base(
            session, amount=Decimal("7"), currency="US$", on_date=date(2024, 2, 1)
        )
    assert result.fallback is True
    assert result.amount == Decimal("7.00")


def test_frankfurter_request_shape(monkeypatch):
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        return httpx.Response(200, json={"date": "2024-01-31", "rates": {"SGD": 1.34}})

    def _get(url, *, params, timeout, follow_redirects):
        with httpx.Client(transport=httpx.MockTransport(handler)) as client:
            return client.get(url, params=params)

    monkeypatch.setattr(fx_service.httpx, "get", _get)
    rate, as_of = fetch_frankfurter_rate(
        from_currency="usd", to_currency="SGD", on_date=date(2024, 2, 1)
    )

    assert seen["url"] == "https://api.frankfurter.app/2024-02-01?from=USD&to=SGD"
    assert rate == Decimal("1.34")
    assert as_of == date(2024, 1, 31)
