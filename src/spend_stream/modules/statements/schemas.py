from __future__ import annotations

import uuid
from datetime import date, datetime

from pydantic import BaseModel

from spend_stream.modules.statements.models import StatementStatus


class StatementOut(BaseModel):
    id: uuid.UUID
    user_id: uuid.UUID
    file_name: str
    checksum: str
    status: StatementStatus
    error_message: str | None
    expense_count: int
    blob_url: str
    byte_size: int
    bank_name: str | None
    period_start: date | None
    period_end: date | None
    metadata_json: dict
    created_at: datetime
    updated_at: datetime


class StatementUploadOut(BaseModel):
    statement_id: uuid.UUID
    status: StatementStatus
    message: str
