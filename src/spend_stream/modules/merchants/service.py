from __future__ import annotations

import uuid

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from spend_stream.core.logging import get_logger, log_event
from spend_stream.modules.categories.service import get_or_create_category
from spend_stream.modules.expenses.models import Expense
from spend_stream.modules.merchants.models import MerchantMapping

logger = get_logger(__name__)


def normalize_merchant(name: str | None) -> str:
    return (name or "").strip().upper()


def like_contains(term: str) -> str:
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def get_merchant_mapping(
    session: Session, *, user_id: uuid.UUID, merchant: str | None
) -> MerchantMapping | None:
    normalized = normalize_merchant(merchant)
    if not normalized:
        return None
    return session.scalar(
        select(MerchantMapping).where(
            MerchantMapping.user_id == user_id,
            MerchantMapping.merchant_name == normalized,
        )
    )


def list_merchant_mappings(session: Session, *, user_id: uuid.UUID) -> list[MerchantMapping]:
    return list(
        session.scalars(
            select(MerchantMapping)
            .where(MerchantMapping.user_id == user_id)
            .order_by(MerchantMapping.merchant_name)
        )
    )


def create_merchant_mapping(
    session: Session,
    *,
    user_id: uuid.UUID,
    merchant: str,
    category: str,
) -> bool:
    """Insert a mapping; an existing mapping for the merchant is left as is.

    Returns ``False`` when the mapping already existed. Flushes, does not commit.
    """
    normalized = normalize_merchant(merchant)
    if not normalized or not category.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Merchant name and category are required",
        )
    if get_merchant_mapping(session, user_id=user_id, merchant=normalized):
        return False
    mapping = MerchantMapping(user_id=user_id, merchant_name=normalized, category=category.strip())
    try:
        with session.begin_nested():
            session.add(mapping)
            session.flush()
    except IntegrityError:
        return False
    log_event(logger, "merchant_mapping.created", merchant=normalized, category=mapping.category)
    return True


def update_merchant_mapping(
    session: Session, *, user_id: uuid.UUID, merchant: str, category: str
) -> MerchantMapping:
    mapping = get_merchant_mapping(session, user_id=user_id, merchant=merchant)
    if not mapping:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Merchant mapping not found"
        )
    mapping.category = category.strip()
    session.add(mapping)
    session.flush()
    log_event(logger, "merchant_mapping.updated", merchant=mapping.merchant_name, category=category)
    return mapping


def delete_merchant_mapping(session: Session, *, user_id: uuid.UUID, merchant: str) -> None:
    mapping = get_merchant_mapping(session, user_id=user_id, merchant=merchant)
    if not mapping:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Merchant mapping not found"
        )
    merchant_name = mapping.merchant_name
    session.delete(mapping)
    session.commit()
    log_event(logger, "merchant_mapping.deleted", merchant=merchant_name)


def apply_mapping_to_expenses(
    session: Session, *, user_id: uuid.UUID, merchant: str, category: str
) -> int:
    """Recategorize every expense whose merchant contains ``merchant`` (any case).

    Flushes, does not commit. Returns the number of expenses touched.
    """
    term = (merchant or "").strip()
    if not term:
        return 0
    target = get_or_create_category(session, user_id=user_id, name=category)
    expenses = list(
        session.scalars(
            select(Expense).where(
                Expense.user_id == user_id,
                Expense.merchant.ilike(like_contains(term), escape="\\"),
            )
        )
    )
    for expense in expenses:
        expense.category_id = target.id
        expense.category = target.name
    session.flush()
    log_event(
        logger,
        "merchant_mapping.applied",
        merchant=normalize_merchant(term),
        category=target.name,
        updated_count=len(expenses),
    )
    return len(expenses)
