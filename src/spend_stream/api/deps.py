from __future__ import annotations

import uuid

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.orm import Session

from spend_stream.core.db import db_session
from spend_stream.core.logging import set_user_context
from spend_stream.core.security import read_access_token
from spend_stream.core.storage import ObjectStorage
from spend_stream.modules.identity.models import User
from spend_stream.modules.realtime.broker import ChangeBroker

bearer_scheme = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    session: Session = Depends(db_session),
) -> User:
    token = credentials.credentials if credentials else None
    if not token:
        raise _unauthorized("Not authenticated")

    subject = read_access_token(token)
    if not subject:
        raise _unauthorized("Invalid token")
    try:
        user_id = uuid.UUID(subject)
    except ValueError as e:
        raise _unauthorized("Invalid token") from e

    user = session.scalar(select(User).where(User.id == user_id))
    if not user or not user.is_active:
        raise _unauthorized("Invalid user")
    set_user_context(str(user.id))
    return user


def get_storage(request: Request) -> ObjectStorage:
    return request.app.state.storage


def get_broker(request: Request) -> ChangeBroker:
    return request.app.state.broker
