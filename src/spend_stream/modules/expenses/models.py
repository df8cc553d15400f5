from __future__ import annotations

import uuid
from datetime import date
from decimal import Decimal

from sqlalchemy import Date, ForeignKey, Numeric, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from spend_stream.core.models import Base, OwnedByUser, Timestamped, UUIDPrimaryKey


class Expense(UUIDPrimaryKey, Timestamped, OwnedByUser, Base):
    __tablename__ = "expenses_expense"
    __table_args__ = (UniqueConstraint("user_id", "line_hash", name="uq_expense_user_line_hash"),)

    statement_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("statements_statement.id"), index=True, nullable=True
    )

    transaction_date: Mapped[date] = mapped_column(Date, index=True)
    description: Mapped[str] = mapped_column(Text)
    merchant: Mapped[str | None] = mapped_column(String(200), nullable=True, index=True)

    # Base-currency amount; ``original_*`` keep what the statement printed.
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    currency: Mapped[str] = mapped_column(String(3))
    original_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    original_currency: Mapped[str] = mapped_column(String(3))
    fx_rate: Mapped[Decimal | None] = mapped_column(Numeric(18, 8), nullable=True)

    category_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("categories_category.id"), index=True
    )
    category: Mapped[str] = mapped_column(String(50))

    line_hash: Mapped[str] = mapped_column(String(64))
