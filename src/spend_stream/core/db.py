from __future__ import annotations

from collections.abc import Generator
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.engine.url import make_url
from sqlalchemy.orm import Session, sessionmaker

from spend_stream.core.config import settings


def engine_options(database_url: str) -> dict[str, Any]:
    if not make_url(database_url).drivername.startswith("sqlite"):
        return {"pool_pre_ping": True}
    # Ingestion commits row by row from worker threads while API requests read
    # the same file; writers wait on the lock instead of failing fast.
    return {
        "connect_args": {
            "check_same_thread": False,
            "timeout": settings.sqlite_busy_timeout_seconds,
        }
    }


engine = create_engine(settings.database_url, **engine_options(settings.database_url))
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


def db_session() -> Generator[Session, None, None]:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
