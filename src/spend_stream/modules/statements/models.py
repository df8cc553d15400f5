from __future__ import annotations

import enum
from datetime import date

from sqlalchemy import JSON, Date, Enum, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from spend_stream.core.models import Base, OwnedByUser, Timestamped, UUIDPrimaryKey


class StatementStatus(str, enum.Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({StatementStatus.COMPLETED, StatementStatus.FAILED})


class Statement(UUIDPrimaryKey, Timestamped, OwnedByUser, Base):
    __tablename__ = "statements_statement"
    __table_args__ = (UniqueConstraint("user_id", "checksum", name="uq_statement_user_checksum"),)

    file_name: Mapped[str] = mapped_column(String(512))
    checksum: Mapped[str] = mapped_column(String(64))
    content_type: Mapped[str] = mapped_column(String(200))
    byte_size: Mapped[int] = mapped_column(Integer)
    storage_key: Mapped[str] = mapped_column(String(1024), unique=True)
    blob_url: Mapped[str] = mapped_column(String(2048))

    status: Mapped[StatementStatus] = mapped_column(
        Enum(StatementStatus, native_enum=False, values_callable=lambda e: [m.value for m in e]),
        index=True,
        default=StatementStatus.PROCESSING,
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    expense_count: Mapped[int] = mapped_column(Integer, default=0)

    bank_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    period_start: Mapped[date | None] = mapped_column(Date, nullable=True)
    period_end: Mapped[date | None] = mapped_column(Date, nullable=True)
    metadata_json: Mapped[dict] = mapped_column(JSON, default=dict)
