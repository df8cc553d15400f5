from __future__ import annotations

import uuid

from fastapi import HTTPException, status
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from spend_stream.core.config import settings
from spend_stream.core.logging import get_logger, log_event
from spend_stream.modules.categories.models import Category
from spend_stream.modules.expenses.models import Expense

logger = get_logger(__name__)

OTHER = "Other"
TRAVEL = "Travel"
MAX_NAME_LENGTH = 50

DEFAULT_CATEGORIES: tuple[tuple[str, str], ...] = (
    ("Dining", "Restaurants, cafes, food delivery"),
    ("Groceries", "Supermarkets, grocery stores, food shopping"),
    ("Transportation", "Public transport, taxis, fuel, parking"),
    ("Shopping", "Retail, clothing, electronics, general merchandise"),
    ("Entertainment", "Movies, games, streaming, events, hobbies"),
    ("Bills & Utilities", "Utilities, phone, internet, insurance, subscriptions"),
    ("Healthcare", "Medical, dental, pharmacy, fitness, wellness"),
    ("Education", "Schools, courses, books, educational materials"),
    (TRAVEL, "Hotels, flights, foreign transactions, travel expenses"),
    (OTHER, "Miscellaneous expenses"),
)


class CategoryLimitError(RuntimeError):
    pass


def normalize_category_name(name: str) -> str:
    return name.strip().lower()


def _clean_name(name: str) -> str:
    clean = " ".join(str(name or "").split())
    if not clean or len(clean) > MAX_NAME_LENGTH:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Category name must be between 1 and {MAX_NAME_LENGTH} characters.",
        )
    return clean


def list_categories(session: Session, *, user_id: uuid.UUID) -> list[Category]:
    return list(
        session.scalars(
            select(Category).where(Category.user_id == user_id).order_by(Category.name)
        )
    )


def list_category_names(session: Session, *, user_id: uuid.UUID) -> list[str]:
    return [c.name for c in list_categories(session, user_id=user_id)]


def count_categories(session: Session, *, user_id: uuid.UUID) -> int:
    return int(
        session.scalar(select(func.count(Category.id)).where(Category.user_id == user_id)) or 0
    )


def find_category_by_name(
    session: Session, *, user_id: uuid.UUID, name: str
) -> Category | None:
    return session.scalar(
        select(Category).where(
            Category.user_id == user_id,
            Category.name_normalized == normalize_category_name(name),
        )
    )


def get_category(session: Session, *, user_id: uuid.UUID, category_id: uuid.UUID) -> Category:
    category = session.scalar(
        select(Category).where(Category.id == category_id, Category.user_id == user_id)
    )
    if not category:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Category not found")
    return category


def seed_default_categories(session: Session, *, user_id: uuid.UUID) -> int:
    """Add any missing default categories for a user. Flushes, does not commit."""
    existing = {
        c.name_normalized for c in session.scalars(select(Category).where(Category.user_id == user_id))
    }
    added = 0
    for name, description in DEFAULT_CATEGORIES:
        if normalize_category_name(name) in existing:
            continue
        session.add(
            Category(
                user_id=user_id,
                name=name,
                name_normalized=normalize_category_name(name),
                description=description,
                is_default=True,
            )
        )
        added += 1
    session.flush()
    return added


def create_category(
    session: Session,
    *,
    user_id: uuid.UUID,
    name: str,
    description: str | None = None,
) -> Category:
    clean = _clean_name(name)
    if count_categories(session, user_id=user_id) >= settings.max_categories_per_user:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Maximum of {settings.max_categories_per_user} categories reached.",
        )
    if find_category_by_name(session, user_id=user_id, name=clean):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail=f"Category '{clean}' already exists."
        )
    category = Category(
        user_id=user_id,
        name=clean,
        name_normalized=normalize_category_name(clean),
        description=description.strip() if description and description.strip() else None,
        is_default=False,
    )
    session.add(category)
    try:
        session.commit()
    except IntegrityError as e:
        session.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail=f"Category '{clean}' already exists."
        ) from e
    session.refresh(category)
    log_event(logger, "category.created", category_id=str(category.id), name=category.name)
    return category


def update_category(
    session: Session,
    *,
    user_id: uuid.UUID,
    category_id: uuid.UUID,
    changes: dict,
) -> Category:
    """Rename and/or re-describe a category.

    A rename rewrites the denormalized ``Expense.category`` of every expense
    in the category within the same transaction.
    """
    category = get_category(session, user_id=user_id, category_id=category_id)

    if "description" in changes:
        description = changes["description"]
        category.description = (
            str(description).strip() if description and str(description).strip() else None
        )

    renamed = 0
    if changes.get("name") is not None:
        clean = _clean_name(changes["name"])
        clash = find_category_by_name(session, user_id=user_id, name=clean)
        if clash and clash.id != category.id:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT, detail=f"Category '{clean}' already exists."
            )
        if clean != category.name:
            category.name = clean
            category.name_normalized = normalize_category_name(clean)
            for expense in _expenses_in(session, user_id=user_id, category_id=category.id):
                expense.category = clean
                renamed += 1

    session.add(category)
    session.commit()
    session.refresh(category)
    log_event(
        logger,
        "category.updated",
        category_id=str(category.id),
        name=category.name,
        expenses_renamed=renamed,
    )
    return category


def delete_category(
    session: Session,
    *,
    user_id: uuid.UUID,
    category_id: uuid.UUID,
    target_category_id: uuid.UUID | None = None,
) -> dict[str, int | bool]:
    category = get_category(session, user_id=user_id, category_id=category_id)
    expenses = _expenses_in(session, user_id=user_id, category_id=category.id)

    if target_category_id is not None:
        if target_category_id == category.id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Target category must differ from the deleted category.",
            )
        target = get_category(session, user_id=user_id, category_id=target_category_id)
        for expense in expenses:
            expense.category_id = target.id
            expense.category = target.name
        result: dict[str, int | bool] = {"deleted": True, "reassigned_count": len(expenses)}
    else:
        for expense in expenses:
            session.delete(expense)
        result = {"deleted": True, "deleted_count": len(expenses)}

    session.flush()
    session.delete(category)
    session.commit()
    log_event(logger, "category.deleted", category_id=str(category_id), **result)
    return result


def count_category_expenses(
    session: Session, *, user_id: uuid.UUID, category_id: uuid.UUID
) -> int:
    category = get_category(session, user_id=user_id, category_id=category_id)
    return int(
        session.scalar(
            select(func.count(Expense.id)).where(
                Expense.user_id == user_id, Expense.category_id == category.id
            )
        )
        or 0
    )


def get_or_create_category(session: Session, *, user_id: uuid.UUID, name: str) -> Category:
    """Resolve a free-text category label to this user's category row.

    Lookup is case-insensitive. A missing category is created inside a
    savepoint; losing a concurrent create race re-selects the winner. When the
    per-user cap is reached the existing "Other" category is returned instead.
    Flushes, does not commit.
    """
    label = " ".join(str(name or "").split())[:MAX_NAME_LENGTH] or OTHER
    existing = find_category_by_name(session, user_id=user_id, name=label)
    if existing:
        return existing

    if count_categories(session, user_id=user_id) >= settings.max_categories_per_user:
        fallback = find_category_by_name(session, user_id=user_id, name=OTHER)
        if fallback is None:
            raise CategoryLimitError(
                f"Category limit of {settings.max_categories_per_user} reached for user"
            )
        log_event(logger, "category.resolve.capped", requested=label, resolved=fallback.name)
        return fallback

    category = Category(
        user_id=user_id,
        name=label,
        name_normalized=normalize_category_name(label),
        is_default=False,
    )
    try:
        with session.begin_nested():
            session.add(category)
            session.flush()
    except IntegrityError:
        winner = find_category_by_name(session, user_id=user_id, name=label)
        if winner is None:
            raise
        return winner
    log_event(logger, "category.created", category_id=str(category.id), name=label, implicit=True)
    return category


def _expenses_in(session: Session, *, user_id: uuid.UUID, category_id: uuid.UUID) -> list[Expense]:
    return list(
        session.scalars(
            select(Expense).where(Expense.user_id == user_id, Expense.category_id == category_id)
        )
    )
