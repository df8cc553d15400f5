from __future__ import annotations

from sqlalchemy import String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from spend_stream.core.models import Base, OwnedByUser, Timestamped, UUIDPrimaryKey


class MerchantMapping(UUIDPrimaryKey, Timestamped, OwnedByUser, Base):
    __tablename__ = "merchants_merchant_mapping"
    __table_args__ = (
        UniqueConstraint("user_id", "merchant_name", name="uq_merchant_mapping_user_merchant"),
    )

    # Stored uppercased.
    merchant_name: Mapped[str] = mapped_column(String(200))
    category: Mapped[str] = mapped_column(String(50))
