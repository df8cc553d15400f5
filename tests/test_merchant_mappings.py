from __future__ import annotations

from datetime import date

import pytest
from conftest import add_expense
from fastapi import HTTPException
from sqlalchemy import select

from spend_stream.core.db import SessionLocal
from spend_stream.modules.merchants.models import MerchantMapping
from spend_stream.modules.merchants.service import (
    apply_mapping_to_expenses,
    create_merchant_mapping,
    delete_merchant_mapping,
    get_merchant_mapping,
    list_merchant_mappings,
    update_merchant_mapping,
)


def test_mapping_names_are_uppercased_and_unique(user):
    with SessionLocal() as session:
        assert create_merchant_mapping(
            session, user_id=user.id, merchant=" grab ", category="Transportation"
        )
        assert not create_merchant_mapping(
            session, user_id=user.id, merchant="GRAB", category="Dining"
        )
        session.commit()

        mappings = list_merchant_mappings(session, user_id=user.id)
        assert [(m.merchant_name, m.category) for m in mappings] == [("GRAB", "Transportation")]
        assert get_merchant_mapping(session, user_id=user.id, merchant="Grab") is not None


def test_blank_merchant_is_rejected(user):
    with SessionLocal() as session:
        with pytest.raises(HTTPException) as exc:
            create_merchant_mapping(session, user_id=user.id, merchant="  ", category="Dining")
        assert exc.value.status_code == 400


def test_apply_mapping_matches_substring_case_insensitively(user):
    with SessionLocal() as session:
        for merchant in ("GRAB*RIDE 1234", "grab food", "Uber"):
            add_expense(
                session,
                user_id=user.id,
                transaction_date=date(2024, 5, 1),
                description=f"Trip {merchant}",
                merchant=merchant,
                amount="12.00",
            )
        updated = apply_mapping_to_expenses(
            session, user_id=user.id, merchant="Grab", category="Transportation"
        )
        session.commit()
    assert updated == 2


def test_update_and_delete_mapping(user):
    with SessionLocal() as session:
        create_merchant_mapping(session, user_id=user.id, merchant="Netflix", category="Other")
        session.commit()

        mapping = update_merchant_mapping(
            session, user_id=user.id, merchant="netflix", category="Entertainment"
        )
        session.commit()
        assert mapping.category == "Entertainment"

        delete_merchant_mapping(session, user_id=user.id, merchant="NETFLIX")
        assert get_merchant_mapping(session, user_id=user.id, merchant="Netflix") is None

        with pytest.raises(HTTPException) as exc:
            delete_merchant_mapping(session, user_id=user.id, merchant="NETFLIX")
        assert exc.value.status_code == 404


def test_losing_a_create_race_keeps_the_winner(monkeypatch, user):
    from spend_stream.modules.merchants import service as merchants_service

    real_get = merchants_service.get_merchant_mapping
    raced = []

    def _get_after_competitor(session, *, user_id, merchant):
        if not raced:
            # A concurrent request maps the same merchant after our lookup.
            with SessionLocal() as other:
                other.add(
                    MerchantMapping(
                        user_id=user_id, merchant_name="GRAB", category="Transportation"
                    )
                )
                other.commit()
            raced.append(True)
            return None
        return real_get(session, user_id=user_id, merchant=merchant)

    monkeypatch.setattr(merchants_service, "get_merchant_mapping", _get_after_competitor)

    with SessionLocal() as session:
        assert not create_merchant_mapping(
            session, user_id=user.id, merchant="grab", category="Dining"
        )
        session.commit()

        mappings = session.scalars(
            select(MerchantMapping).where(MerchantMapping.user_id == user.id)
        ).all()
        assert [(m.merchant_name, m.category) for m in mappings] == [("GRAB", "Transportation")]
