from __future__ import annotations

import os
import shutil
from collections.abc import Iterable
from io import BytesIO
from pathlib import Path

import httpx
import pytest

# Set env before any spend_stream imports (settings/engine are created at import time).
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite:///./.spend_stream_test.db")
os.environ.setdefault("STORAGE_BACKEND", "local")
os.environ.setdefault("LOCAL_STORAGE_PATH", ".tmp_storage_test")
os.environ.setdefault("REALTIME_BACKEND", "local")
os.environ.setdefault("BASE_CURRENCY", "SGD")


@pytest.fixture(autouse=True)
def _reset_db_and_storage() -> None:
    import spend_stream.models  # noqa: F401
    from spend_stream.core.db import engine
    from spend_stream.core.models import Base

    storage_path = Path(os.environ["LOCAL_STORAGE_PATH"])
    if storage_path.exists():
        shutil.rmtree(storage_path)

    # Reset DB schema
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)

    yield


@pytest.fixture(autouse=True)
def _offline_fx(monkeypatch):
    from spend_stream.modules.fx import service as fx_service

    def _unreachable(*, from_currency, to_currency, on_date):
        raise httpx.ConnectError("FX source unreachable in tests")

    monkeypatch.setattr(fx_service, "_fetch_frankfurter_rate", _unreachable)


@pytest.fixture
def broker():
    from spend_stream.core.db import SessionLocal
    from spend_stream.modules.realtime.broker import LocalChangeBroker
    from spend_stream.modules.realtime.capture import install_change_capture

    local = LocalChangeBroker()
    capture = install_change_capture(SessionLocal, local)
    yield local
    capture.remove()


@pytest.fixture
def storage():
    from spend_stream.core.storage import LocalObjectStorage

    return LocalObjectStorage(Path(os.environ["LOCAL_STORAGE_PATH"]))


@pytest.fixture
def user():
    from spend_stream.core.db import SessionLocal
    from spend_stream.modules.identity.service import register_user

    with SessionLocal() as session:
        created = register_user(
            session, email="owner@spendstream.io", password="password123", full_name="Owner"
        )
        session.expunge(created)
    return created


def make_pdf(pages: int = 1, *, marker: str = "") -> bytes:
    from pypdf import PdfWriter

    writer = PdfWriter()
    for _ in range(pages):
        writer.add_blank_page(width=200, height=200)
    if marker:
        writer.add_metadata({"/Title": marker})
    buf = BytesIO()
    writer.write(buf)
    return buf.getvalue()


def fake_extraction(monkeypatch, raw_elements: Iterable[object] | Exception) -> list[dict]:
    """Replace the model call with a fixed list of raw elements fed through the ladder."""
    from spend_stream.modules.extraction import ai as extraction_ai
    from spend_stream.modules.extraction.coercion import coerce_candidate

    calls: list[dict] = []

    def _stream(body, *, categories, file_name="statement.pdf", extra_instructions=None, **_):
        calls.append(
            {"file_name": file_name, "categories": list(categories), "extra": extra_instructions}
        )
        if isinstance(raw_elements, Exception):
            raise raw_elements
        for raw in raw_elements:
            yield coerce_candidate(raw, categories)

    monkeypatch.setattr(extraction_ai, "stream_statement_candidates", _stream)
    return calls


def add_expense(
    session,
    *,
    user_id,
    transaction_date,
    description: str,
    amount: str,
    merchant: str | None = None,
    category: str = "Other",
):
    """Insert one expense directly, bypassing extraction."""
    from decimal import Decimal

    from spend_stream.modules.categories.service import get_or_create_category
    from spend_stream.modules.expenses.models import Expense
    from spend_stream.modules.ingestion.hashing import line_hash

    resolved = get_or_create_category(session, user_id=user_id, name=category)
    expense = Expense(
        user_id=user_id,
        transaction_date=transaction_date,
        description=description,
        merchant=merchant,
        amount=Decimal(amount),
        currency="SGD",
        original_amount=Decimal(amount),
        original_currency="SGD",
        fx_rate=Decimal("1"),
        category_id=resolved.id,
        category=resolved.name,
        line_hash=line_hash(transaction_date.isoformat(), description, Decimal(amount)),
    )
    session.add(expense)
    session.commit()
    session.refresh(expense)
    return expense
