from __future__ import annotations

import uuid

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from spend_stream.core.logging import get_logger, log_event
from spend_stream.modules.ingestion.models import IngestionSettings

logger = get_logger(__name__)


def get_ingestion_prompt(session: Session, *, user_id: uuid.UUID) -> str:
    row = session.scalar(select(IngestionSettings).where(IngestionSettings.user_id == user_id))
    return row.prompt if row else ""


def save_ingestion_prompt(session: Session, *, user_id: uuid.UUID, prompt: str) -> str:
    clean = (prompt or "").strip()
    row = session.scalar(select(IngestionSettings).where(IngestionSettings.user_id == user_id))
    if row is None:
        row = IngestionSettings(user_id=user_id, prompt=clean)
        try:
            with session.begin_nested():
                session.add(row)
                session.flush()
        except IntegrityError:
            row = session.scalar(
                select(IngestionSettings).where(IngestionSettings.user_id == user_id)
            )
            if row is None:
                raise
            row.prompt = clean
    else:
        row.prompt = clean
    session.commit()
    log_event(logger, "ingestion.prompt.saved", prompt_length=len(clean))
    return clean
