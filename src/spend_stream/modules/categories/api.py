from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from spend_stream.api.deps import get_current_user
from spend_stream.core.db import db_session
from spend_stream.modules.categories.schemas import (
    CategoryCreateIn,
    CategoryDeleteOut,
    CategoryExpenseCountOut,
    CategoryOut,
    CategoryUpdateIn,
)
from spend_stream.modules.categories.service import (
    count_category_expenses,
    create_category,
    delete_category,
    list_categories,
    update_category,
)
from spend_stream.modules.identity.models import User

router = APIRouter(tags=["categories"])


@router.get("/categories", response_model=list[CategoryOut])
def list_categories_endpoint(
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> list[CategoryOut]:
    return [
        CategoryOut.model_validate(c, from_attributes=True)
        for c in list_categories(session, user_id=user.id)
    ]


@router.post("/categories", response_model=CategoryOut, status_code=status.HTTP_201_CREATED)
def create_category_endpoint(
    payload: CategoryCreateIn,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> CategoryOut:
    category = create_category(
        session, user_id=user.id, name=payload.name, description=payload.description
    )
    return CategoryOut.model_validate(category, from_attributes=True)


@router.patch("/categories/{category_id}", response_model=CategoryOut)
def update_category_endpoint(
    category_id: uuid.UUID,
    payload: CategoryUpdateIn,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> CategoryOut:
    category = update_category(
        session,
        user_id=user.id,
        category_id=category_id,
        changes=payload.model_dump(exclude_unset=True),
    )
    return CategoryOut.model_validate(category, from_attributes=True)


@router.delete("/categories/{category_id}", response_model=CategoryDeleteOut)
def delete_category_endpoint(
    category_id: uuid.UUID,
    target_category_id: uuid.UUID | None = None,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> CategoryDeleteOut:
    result = delete_category(
        session,
        user_id=user.id,
        category_id=category_id,
        target_category_id=target_category_id,
    )
    return CategoryDeleteOut(**result)


@router.get("/categories/{category_id}/expense-count", response_model=CategoryExpenseCountOut)
def category_expense_count_endpoint(
    category_id: uuid.UUID,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> CategoryExpenseCountOut:
    count = count_category_expenses(session, user_id=user.id, category_id=category_id)
    return CategoryExpenseCountOut(category_id=category_id, expense_count=count)
