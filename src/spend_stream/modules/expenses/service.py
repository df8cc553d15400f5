from __future__ import annotations

import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import ColumnElement, Select, or_, select
from sqlalchemy.orm import Session

from spend_stream.core.logging import get_logger, log_event
from spend_stream.modules.categories.service import get_or_create_category
from spend_stream.modules.expenses.models import Expense
from spend_stream.modules.expenses.schemas import SortDirection, SortField
from spend_stream.modules.fx.service import CENT
from spend_stream.modules.merchants.service import (
    apply_mapping_to_expenses,
    create_merchant_mapping,
    like_contains,
)

logger = get_logger(__name__)

TOTAL = "Total"

_SORT_COLUMNS = {
    "date": Expense.transaction_date,
    "amount": Expense.amount,
    "merchant": Expense.merchant,
}

_EDITABLE_FIELDS = (
    "transaction_date",
    "description",
    "merchant",
    "amount",
    "original_amount",
    "original_currency",
)


@dataclass
class DateRange:
    date_from: date | None = None
    date_to: date | None = None

    @property
    def bounded(self) -> bool:
        return (
            self.date_from is not None
            and self.date_to is not None
            and self.date_from <= self.date_to
        )


@dataclass
class ExpenseFilters:
    date_from: date | None = None
    date_to: date | None = None
    categories: list[str] = field(default_factory=list)
    merchants: list[str] = field(default_factory=list)
    amount_min: Decimal | None = None
    amount_max: Decimal | None = None
    search: str | None = None
    sort_by: SortField = "date"
    sort_dir: SortDirection = "desc"


def _date_clauses(date_from: date | None, date_to: date | None) -> list[ColumnElement[bool]]:
    # An inverted range is treated as no range at all.
    if date_from and date_to and date_from > date_to:
        return []
    clauses: list[ColumnElement[bool]] = []
    if date_from:
        clauses.append(Expense.transaction_date >= date_from)
    if date_to:
        clauses.append(Expense.transaction_date <= date_to)
    return clauses


def _filter_clauses(filters: ExpenseFilters) -> list[ColumnElement[bool]]:
    clauses = _date_clauses(filters.date_from, filters.date_to)
    if filters.categories:
        clauses.append(Expense.category.in_(filters.categories))
    if filters.merchants:
        clauses.append(Expense.merchant.in_(filters.merchants))
    if filters.amount_min is not None:
        clauses.append(Expense.amount >= filters.amount_min)
    if filters.amount_max is not None:
        clauses.append(Expense.amount <= filters.amount_max)
    term = (filters.search or "").strip()
    if term:
        pattern = like_contains(term)
        clauses.append(
            or_(
                Expense.description.ilike(pattern, escape="\\"),
                Expense.merchant.ilike(pattern, escape="\\"),
                Expense.category.ilike(pattern, escape="\\"),
            )
        )
    return clauses


def build_expense_query(*, user_id: uuid.UUID, filters: ExpenseFilters | None = None) -> Select:
    """Translate filters into one parameterized SELECT scoped to the owner."""
    filters = filters or ExpenseFilters()
    column = _SORT_COLUMNS.get(filters.sort_by, Expense.transaction_date)
    primary = column.asc() if filters.sort_dir == "asc" else column.desc()
    return (
        select(Expense)
        .where(Expense.user_id == user_id, *_filter_clauses(filters))
        .order_by(primary, Expense.created_at.desc(), Expense.id)
    )


def list_expenses(
    session: Session, *, user_id: uuid.UUID, filters: ExpenseFilters | None = None
) -> list[Expense]:
    return list(session.scalars(build_expense_query(user_id=user_id, filters=filters)))


def get_expense(session: Session, *, user_id: uuid.UUID, expense_id: uuid.UUID) -> Expense:
    expense = session.scalar(
        select(Expense).where(Expense.id == expense_id, Expense.user_id == user_id)
    )
    if not expense:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Expense not found")
    return expense


def update_expense(
    session: Session,
    *,
    user_id: uuid.UUID,
    expense_id: uuid.UUID,
    changes: dict[str, Any],
    apply_to_merchant: bool = False,
) -> tuple[Expense, int, bool]:
    """Apply user edits to one expense.

    A category change on an expense with a merchant also records a merchant
    mapping; with ``apply_to_merchant`` every expense of that merchant is
    recategorized too. Returns ``(expense, updated_count, mapping_created)``.
    """
    expense = get_expense(session, user_id=user_id, expense_id=expense_id)
    previous_category = expense.category

    for key in _EDITABLE_FIELDS:
        if key not in changes:
            continue
        value = changes[key]
        if key == "description":
            if value is None or not str(value).strip():
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST, detail="Description is required"
                )
            value = str(value).strip()
        elif key == "merchant":
            value = str(value).strip() if value and str(value).strip() else None
        elif key == "original_currency" and value:
            value = str(value).strip().upper()
        elif value is None:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST, detail=f"{key} cannot be empty"
            )
        setattr(expense, key, value)

    category_changed = False
    if changes.get("category") is not None:
        category = get_or_create_category(session, user_id=user_id, name=changes["category"])
        expense.category_id = category.id
        expense.category = category.name
        category_changed = category.name != previous_category

    updated_count = 1
    mapping_created = False
    if category_changed and expense.merchant:
        mapping_created = create_merchant_mapping(
            session, user_id=user_id, merchant=expense.merchant, category=expense.category
        )
        if apply_to_merchant:
            updated_count = apply_mapping_to_expenses(
                session, user_id=user_id, merchant=expense.merchant, category=expense.category
            )

    session.commit()
    session.refresh(expense)
    log_event(
        logger,
        "expense.updated",
        expense_id=str(expense.id),
        fields=sorted(k for k in changes if k in _EDITABLE_FIELDS or k == "category"),
        category_changed=category_changed or None,
        mapping_created=mapping_created or None,
        updated_count=updated_count,
    )
    return expense, updated_count, mapping_created


def delete_expense(session: Session, *, user_id: uuid.UUID, expense_id: uuid.UUID) -> None:
    expense = get_expense(session, user_id=user_id, expense_id=expense_id)
    session.delete(expense)
    session.commit()
    log_event(logger, "expense.deleted", expense_id=str(expense_id))


def bulk_delete_expenses(
    session: Session, *, user_id: uuid.UUID, expense_ids: list[uuid.UUID]
) -> int:
    if not expense_ids:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="No expenses selected for deletion"
        )
    # Loaded through the ORM so each row is announced as a delete.
    expenses = list(
        session.scalars(
            select(Expense).where(Expense.user_id == user_id, Expense.id.in_(expense_ids))
        )
    )
    for expense in expenses:
        session.delete(expense)
    session.commit()
    log_event(
        logger, "expense.bulk_deleted", requested=len(expense_ids), deleted_count=len(expenses)
    )
    return len(expenses)


def _range_expenses(
    session: Session, *, user_id: uuid.UUID, date_range: DateRange | None
) -> list[Expense]:
    date_range = date_range or DateRange()
    return list(
        session.scalars(
            select(Expense)
            .where(
                Expense.user_id == user_id,
                *_date_clauses(date_range.date_from, date_range.date_to),
            )
            .order_by(Expense.transaction_date, Expense.created_at)
        )
    )


def month_label(value: date) -> str:
    return value.strftime("%b %Y")


def monthly_expenses_by_category(
    session: Session, *, user_id: uuid.UUID, date_range: DateRange | None = None
) -> list[dict[str, Any]]:
    """One row per month (chronological) with every category seen in the data and a Total."""
    expenses = _range_expenses(session, user_id=user_id, date_range=date_range)
    categories = sorted({e.category for e in expenses})

    months: OrderedDict[tuple[int, int], dict[str, Any]] = OrderedDict()
    for expense in expenses:
        key = (expense.transaction_date.year, expense.transaction_date.month)
        row = months.get(key)
        if row is None:
            row = {"month": month_label(expense.transaction_date)}
            row.update({name: Decimal("0") for name in categories})
            row[TOTAL] = Decimal("0")
            months[key] = row
        row[expense.category] += expense.amount
        row[TOTAL] += expense.amount

    return [months[key] for key in sorted(months)]


def _months_between(start: date, end: date) -> int:
    return (end.year - start.year) * 12 + (end.month - start.month) + 1


def expense_headline_numbers(
    session: Session, *, user_id: uuid.UUID, date_range: DateRange | None = None
) -> dict[str, Any]:
    expenses = _range_expenses(session, user_id=user_id, date_range=date_range)
    if not expenses:
        return {
            "category_totals": {},
            "category_averages": {},
            "total": Decimal("0"),
            "average": Decimal("0"),
            "month_count": 0,
        }

    if date_range and date_range.bounded:
        month_count = _months_between(date_range.date_from, date_range.date_to)
    else:
        month_count = max(
            1, len({(e.transaction_date.year, e.transaction_date.month) for e in expenses})
        )

    totals: dict[str, Decimal] = {}
    for expense in expenses:
        totals[expense.category] = totals.get(expense.category, Decimal("0")) + expense.amount
    total = sum(totals.values(), Decimal("0"))
    return {
        "category_totals": dict(sorted(totals.items())),
        "category_averages": {
            name: (value / month_count).quantize(CENT) for name, value in sorted(totals.items())
        },
        "total": total,
        "average": (total / month_count).quantize(CENT),
        "month_count": month_count,
    }
