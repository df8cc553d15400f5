from __future__ import annotations

import uuid
from datetime import date
from decimal import Decimal
from typing import Any

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.orm import Session

from spend_stream.api.deps import get_current_user
from spend_stream.core.db import db_session
from spend_stream.modules.expenses.schemas import (
    BulkDeleteIn,
    BulkDeleteOut,
    ExpenseOut,
    ExpenseUpdateIn,
    ExpenseUpdateOut,
    HeadlineNumbersOut,
    SortDirection,
    SortField,
)
from spend_stream.modules.expenses.service import (
    DateRange,
    ExpenseFilters,
    bulk_delete_expenses,
    delete_expense,
    expense_headline_numbers,
    list_expenses,
    monthly_expenses_by_category,
    update_expense,
)
from spend_stream.modules.identity.models import User

router = APIRouter(tags=["expenses"])


@router.get("/expenses", response_model=list[ExpenseOut])
def list_expenses_endpoint(
    date_from: date | None = None,
    date_to: date | None = None,
    category: list[str] | None = Query(default=None),
    merchant: list[str] | None = Query(default=None),
    amount_min: Decimal | None = None,
    amount_max: Decimal | None = None,
    search: str | None = None,
    sort_by: SortField = "date",
    sort_dir: SortDirection = "desc",
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> list[ExpenseOut]:
    filters = ExpenseFilters(
        date_from=date_from,
        date_to=date_to,
        categories=category or [],
        merchants=merchant or [],
        amount_min=amount_min,
        amount_max=amount_max,
        search=search,
        sort_by=sort_by,
        sort_dir=sort_dir,
    )
    expenses = list_expenses(session, user_id=user.id, filters=filters)
    return [ExpenseOut.model_validate(e, from_attributes=True) for e in expenses]


@router.patch("/expenses/{expense_id}", response_model=ExpenseUpdateOut)
def update_expense_endpoint(
    expense_id: uuid.UUID,
    payload: ExpenseUpdateIn,
    apply_to_merchant: bool = False,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> ExpenseUpdateOut:
    expense, updated_count, mapping_created = update_expense(
        session,
        user_id=user.id,
        expense_id=expense_id,
        changes=payload.model_dump(exclude_unset=True),
        apply_to_merchant=apply_to_merchant,
    )
    return ExpenseUpdateOut(
        expense=ExpenseOut.model_validate(expense, from_attributes=True),
        updated_count=updated_count,
        mapping_created=mapping_created,
    )


@router.delete("/expenses/{expense_id}")
def delete_expense_endpoint(
    expense_id: uuid.UUID,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> Response:
    delete_expense(session, user_id=user.id, expense_id=expense_id)
    return Response(status_code=204)


@router.post("/expenses/bulk-delete", response_model=BulkDeleteOut)
def bulk_delete_endpoint(
    payload: BulkDeleteIn,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> BulkDeleteOut:
    deleted = bulk_delete_expenses(session, user_id=user.id, expense_ids=payload.ids)
    return BulkDeleteOut(deleted_count=deleted)


@router.get("/expenses/summary/monthly")
def monthly_summary_endpoint(
    date_from: date | None = None,
    date_to: date | None = None,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> list[dict[str, Any]]:
    return monthly_expenses_by_category(
        session, user_id=user.id, date_range=DateRange(date_from=date_from, date_to=date_to)
    )


@router.get("/expenses/summary/headline", response_model=HeadlineNumbersOut)
def headline_numbers_endpoint(
    date_from: date | None = None,
    date_to: date | None = None,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> HeadlineNumbersOut:
    numbers = expense_headline_numbers(
        session, user_id=user.id, date_range=DateRange(date_from=date_from, date_to=date_to)
    )
    return HeadlineNumbersOut(**numbers)
