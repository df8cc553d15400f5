from __future__ import annotations

from sqlalchemy import Boolean, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from spend_stream.core.models import Base, OwnedByUser, Timestamped, UUIDPrimaryKey


class Category(UUIDPrimaryKey, Timestamped, OwnedByUser, Base):
    __tablename__ = "categories_category"
    __table_args__ = (
        UniqueConstraint("user_id", "name_normalized", name="uq_category_user_name"),
    )

    name: Mapped[str] = mapped_column(String(50))
    # Lowercased copy of ``name``; the unique key that makes lookups case-insensitive.
    name_normalized: Mapped[str] = mapped_column(String(50), index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False)
