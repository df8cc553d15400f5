from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, File, Query, UploadFile
from sqlalchemy.orm import Session

from spend_stream.api.deps import get_current_user, get_storage
from spend_stream.core.db import db_session
from spend_stream.core.logging import get_logger, log_event
from spend_stream.core.storage import ObjectStorage
from spend_stream.modules.identity.models import User
from spend_stream.modules.statements.schemas import StatementOut, StatementUploadOut
from spend_stream.modules.statements.service import (
    create_statement,
    get_statement,
    list_statements,
)
from spend_stream.worker.tasks import ingest_statement_task

router = APIRouter(tags=["statements"])
logger = get_logger(__name__)


@router.post("/statements", response_model=StatementUploadOut, status_code=202)
async def upload_statement(
    upload: UploadFile = File(...),
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
    storage: ObjectStorage = Depends(get_storage),
) -> StatementUploadOut:
    body = await upload.read()
    filename = upload.filename or "statement.pdf"
    log_event(
        logger,
        "upload.received",
        filename=filename,
        content_type=upload.content_type,
        byte_size=len(body),
    )
    statement = create_statement(
        session,
        storage=storage,
        user_id=user.id,
        filename=filename,
        content_type=upload.content_type,
        body=body,
    )
    statement_id = statement.id
    async_result = ingest_statement_task.delay(str(statement_id))
    log_event(
        logger,
        "celery.task.enqueued",
        task_name="ingest_statement",
        celery_task_id=async_result.id,
        statement_id=str(statement_id),
    )
    return StatementUploadOut(
        statement_id=statement_id,
        status=statement.status,
        message=f"'{filename}' is being processed.",
    )


@router.get("/statements", response_model=list[StatementOut])
def list_statements_endpoint(
    ids: list[uuid.UUID] | None = Query(default=None),
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> list[StatementOut]:
    statements = list_statements(session, user_id=user.id, statement_ids=ids)
    return [StatementOut.model_validate(s, from_attributes=True) for s in statements]


@router.get("/statements/{statement_id}", response_model=StatementOut)
def get_statement_endpoint(
    statement_id: uuid.UUID,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> StatementOut:
    statement = get_statement(session, user_id=user.id, statement_id=statement_id)
    return StatementOut.model_validate(statement, from_attributes=True)
