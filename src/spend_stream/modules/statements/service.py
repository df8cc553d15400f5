from __future__ import annotations

import hashlib
import re
import uuid
from dataclasses import dataclass
from io import BytesIO

from fastapi import HTTPException, status
from pypdf import PdfReader
from pypdf.errors import PyPdfError
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from spend_stream.core.config import settings
from spend_stream.core.logging import get_logger, log_event
from spend_stream.core.storage import ObjectStorage
from spend_stream.modules.realtime.capture import record_change
from spend_stream.modules.statements.models import (
    TERMINAL_STATUSES,
    Statement,
    StatementStatus,
)

logger = get_logger(__name__)

PDF_CONTENT_TYPE = "application/pdf"
_UNSAFE_FILENAME_CHARS = re.compile(r"[^a-zA-Z0-9._-]")


class InvalidStatusTransition(RuntimeError):
    pass


@dataclass(frozen=True)
class UploadCheck:
    checksum: str
    byte_size: int
    page_count: int


def _sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def safe_filename(name: str) -> str:
    return _UNSAFE_FILENAME_CHARS.sub("_", name) or "statement.pdf"


def _looks_like_pdf_bytes(body: bytes) -> bool:
    b = body.lstrip()
    if b.startswith(b"\xef\xbb\xbf"):
        b = b[3:].lstrip()
    return b.startswith(b"%PDF")


def validate_upload(*, filename: str, content_type: str | None, body: bytes) -> UploadCheck:
    """Reject anything that is not a readable PDF within the size limit."""
    if not body:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No file provided.")
    if (content_type or "").split(";")[0].strip().lower() != PDF_CONTENT_TYPE:
        raise HTTPException(
            status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
            detail="Only PDF files are supported.",
        )
    if len(body) > settings.max_upload_bytes:
        limit_mb = settings.max_upload_bytes // (1024 * 1024)
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File too large. Maximum size is {limit_mb}MB.",
        )
    if not _looks_like_pdf_bytes(body):
        raise HTTPException(
            status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
            detail=f"'{filename}' is not a valid PDF (missing %PDF header).",
        )
    try:
        page_count = len(PdfReader(BytesIO(body)).pages)
    except (PyPdfError, ValueError, KeyError, TypeError, OSError) as e:
        raise HTTPException(
            status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
            detail=f"'{filename}' could not be read as a PDF.",
        ) from e
    if page_count == 0:
        raise HTTPException(
            status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
            detail=f"'{filename}' has no pages.",
        )
    return UploadCheck(checksum=_sha256_hex(body), byte_size=len(body), page_count=page_count)


def _duplicate(filename: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail=f"Duplicate: '{filename}' has already been uploaded.",
    )


def create_statement(
    session: Session,
    *,
    storage: ObjectStorage,
    user_id: uuid.UUID,
    filename: str,
    content_type: str | None,
    body: bytes,
) -> Statement:
    check = validate_upload(filename=filename, content_type=content_type, body=body)

    checksum = check.checksum
    if settings.disable_duplicate_detection:
        checksum = _sha256_hex(uuid.uuid4().bytes)
    elif session.scalar(
        select(Statement.id).where(Statement.user_id == user_id, Statement.checksum == checksum)
    ):
        log_event(logger, "statement.upload.duplicate", checksum=checksum, filename=filename)
        raise _duplicate(filename)

    key = f"{user_id}/{uuid.uuid4()}-{safe_filename(filename)}"
    stored = storage.put(key=key, body=body, content_type=PDF_CONTENT_TYPE)

    statement = Statement(
        user_id=user_id,
        file_name=filename,
        checksum=checksum,
        content_type=PDF_CONTENT_TYPE,
        byte_size=stored.byte_size,
        storage_key=stored.key,
        blob_url=stored.url,
        status=StatementStatus.PROCESSING,
        metadata_json={"page_count": check.page_count},
    )
    session.add(statement)
    try:
        session.commit()
    except IntegrityError as e:
        # Lost the (user_id, checksum) race to a concurrent upload of the same file.
        session.rollback()
        storage.delete(key=stored.key)
        raise _duplicate(filename) from e
    session.refresh(statement)
    log_event(
        logger,
        "statement.created",
        statement_id=str(statement.id),
        filename=filename,
        byte_size=stored.byte_size,
        page_count=check.page_count,
    )
    return statement


def list_statements(
    session: Session, *, user_id: uuid.UUID, statement_ids: list[uuid.UUID] | None = None
) -> list[Statement]:
    stmt = select(Statement).where(Statement.user_id == user_id)
    if statement_ids:
        stmt = stmt.where(Statement.id.in_(statement_ids))
    return list(session.scalars(stmt.order_by(Statement.updated_at.desc())))


def get_statement(session: Session, *, user_id: uuid.UUID, statement_id: uuid.UUID) -> Statement:
    statement = session.scalar(
        select(Statement).where(Statement.id == statement_id, Statement.user_id == user_id)
    )
    if not statement:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Statement not found")
    return statement


def transition_status(
    session: Session,
    *,
    statement_id: uuid.UUID,
    to_status: StatementStatus,
    error_message: str | None = None,
    expense_count: int | None = None,
) -> bool:
    """Move a statement from ``processing`` to a terminal status.

    The write is a single conditional UPDATE, so a statement that already
    reached a terminal status is left untouched and ``False`` is returned.
    Commits on success.
    """
    if to_status not in TERMINAL_STATUSES:
        raise InvalidStatusTransition(f"Cannot transition a statement to {to_status.value}")

    values: dict = {"status": to_status, "error_message": error_message}
    if expense_count is not None:
        values["expense_count"] = expense_count
    result = session.execute(
        update(Statement)
        .where(Statement.id == statement_id, Statement.status == StatementStatus.PROCESSING)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if not result.rowcount:
        current = session.scalar(select(Statement.status).where(Statement.id == statement_id))
        log_event(
            logger,
            "statement.status.rejected",
            statement_id=str(statement_id),
            from_status=current.value if current else None,
            to_status=to_status.value,
        )
        return False

    statement = session.get(Statement, statement_id, populate_existing=True)
    if statement is not None:
        record_change(session, statement, "update")
    session.commit()
    log_event(
        logger,
        "statement.status.changed",
        statement_id=str(statement_id),
        from_status=StatementStatus.PROCESSING.value,
        to_status=to_status.value,
        error_message=error_message,
    )
    return True


def mark_completed(session: Session, *, statement_id: uuid.UUID, expense_count: int) -> bool:
    return transition_status(
        session,
        statement_id=statement_id,
        to_status=StatementStatus.COMPLETED,
        expense_count=expense_count,
    )


def mark_failed(
    session: Session,
    *,
    statement_id: uuid.UUID,
    error_message: str,
    expense_count: int | None = None,
) -> bool:
    return transition_status(
        session,
        statement_id=statement_id,
        to_status=StatementStatus.FAILED,
        error_message=error_message[:2000],
        expense_count=expense_count,
    )
