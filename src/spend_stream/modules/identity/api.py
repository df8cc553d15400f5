from __future__ import annotations

from fastapi import APIRouter, Depends, status
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy.orm import Session

from spend_stream.api.deps import get_current_user
from spend_stream.core.db import db_session
from spend_stream.core.security import issue_access_token
from spend_stream.modules.identity.models import User
from spend_stream.modules.identity.schemas import TokenOut, UserOut, UserRegister
from spend_stream.modules.identity.service import authenticate_user, register_user

router = APIRouter(tags=["identity"])


@router.post("/auth/register", response_model=UserOut, status_code=status.HTTP_201_CREATED)
def register(payload: UserRegister, session: Session = Depends(db_session)) -> UserOut:
    user = register_user(
        session,
        email=str(payload.email),
        password=payload.password,
        full_name=payload.full_name,
    )
    return UserOut.model_validate(user, from_attributes=True)


@router.post("/auth/token", response_model=TokenOut)
def login(
    form_data: OAuth2PasswordRequestForm = Depends(),
    session: Session = Depends(db_session),
) -> TokenOut:
    user = authenticate_user(session, email=form_data.username, password=form_data.password)
    token, expires_in = issue_access_token(user_id=str(user.id))
    return TokenOut(access_token=token, expires_in=expires_in)


@router.get("/auth/me", response_model=UserOut)
def me(user: User = Depends(get_current_user)) -> UserOut:
    return UserOut.model_validate(user, from_attributes=True)
