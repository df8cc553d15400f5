from __future__ import annotations

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from spend_stream.core.logging import get_logger, log_event
from spend_stream.core.security import hash_password, verify_password
from spend_stream.modules.categories.service import seed_default_categories
from spend_stream.modules.identity.models import User

logger = get_logger(__name__)


def get_user_by_email(session: Session, *, email: str) -> User | None:
    return session.scalar(select(User).where(User.email == email.strip().lower()))


def register_user(
    session: Session,
    *,
    email: str,
    password: str,
    full_name: str | None = None,
) -> User:
    """Create an account and give it the default category set."""
    normalized = email.strip().lower()
    if get_user_by_email(session, email=normalized):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Email already exists")

    user = User(
        email=normalized,
        full_name=full_name,
        password_hash=hash_password(password),
        is_active=True,
    )
    session.add(user)
    try:
        session.flush()
    except IntegrityError as e:
        session.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail="Email already exists"
        ) from e
    seeded = seed_default_categories(session, user_id=user.id)
    session.commit()
    session.refresh(user)
    log_event(logger, "identity.user.registered", user_id=str(user.id), categories_seeded=seeded)
    return user


def authenticate_user(session: Session, *, email: str, password: str) -> User:
    user = get_user_by_email(session, email=email)
    if not user or not user.is_active or not verify_password(password, user.password_hash):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")
    return user
