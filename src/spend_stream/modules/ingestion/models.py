from __future__ import annotations

from sqlalchemy import Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from spend_stream.core.models import Base, OwnedByUser, Timestamped, UUIDPrimaryKey


class IngestionSettings(UUIDPrimaryKey, Timestamped, OwnedByUser, Base):
    __tablename__ = "ingestion_settings"
    __table_args__ = (UniqueConstraint("user_id", name="uq_ingestion_settings_user"),)

    prompt: Mapped[str] = mapped_column(Text, default="")
