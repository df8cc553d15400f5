from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from spend_stream.api.deps import get_current_user
from spend_stream.core.db import db_session
from spend_stream.modules.identity.models import User
from spend_stream.modules.ingestion.schemas import IngestionPromptIn, IngestionPromptOut
from spend_stream.modules.ingestion.settings_service import (
    get_ingestion_prompt,
    save_ingestion_prompt,
)

router = APIRouter(tags=["ingestion"])


@router.get("/ingestion/prompt", response_model=IngestionPromptOut)
def get_prompt_endpoint(
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> IngestionPromptOut:
    return IngestionPromptOut(prompt=get_ingestion_prompt(session, user_id=user.id))


@router.put("/ingestion/prompt", response_model=IngestionPromptOut)
def save_prompt_endpoint(
    payload: IngestionPromptIn,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> IngestionPromptOut:
    return IngestionPromptOut(
        prompt=save_ingestion_prompt(session, user_id=user.id, prompt=payload.prompt)
    )
