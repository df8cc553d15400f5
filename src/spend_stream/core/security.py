from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any

from jose import JWTError, jwt
from passlib.context import CryptContext

from spend_stream.core.config import settings

_ALGORITHM = "HS256"

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash)


def issue_access_token(*, user_id: str, expires_minutes: int | None = None) -> tuple[str, int]:
    """Return a signed bearer token for ``user_id`` and its lifetime in seconds."""
    minutes = expires_minutes or settings.access_token_exp_minutes
    expires_at = datetime.now(UTC) + timedelta(minutes=minutes)
    claims: dict[str, Any] = {"sub": user_id, "exp": expires_at, "typ": "access"}
    return jwt.encode(claims, settings.secret_key, algorithm=_ALGORITHM), minutes * 60


def read_access_token(token: str) -> str | None:
    try:
        claims = jwt.decode(token, settings.secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if claims.get("typ") != "access":
        return None
    subject = claims.get("sub")
    return subject if isinstance(subject, str) else None
