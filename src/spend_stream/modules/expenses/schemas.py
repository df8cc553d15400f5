from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field


class ExpenseOut(BaseModel):
    id: uuid.UUID
    user_id: uuid.UUID
    statement_id: uuid.UUID | None
    transaction_date: date
    description: str
    merchant: str | None
    amount: Decimal
    currency: str
    original_amount: Decimal
    original_currency: str
    fx_rate: Decimal | None
    category_id: uuid.UUID
    category: str
    line_hash: str
    created_at: datetime
    updated_at: datetime


class ExpenseUpdateIn(BaseModel):
    transaction_date: date | None = None
    description: str | None = None
    merchant: str | None = None
    category: str | None = Field(default=None, max_length=50)
    amount: Decimal | None = None
    original_amount: Decimal | None = None
    original_currency: str | None = Field(default=None, min_length=3, max_length=3)


class ExpenseUpdateOut(BaseModel):
    expense: ExpenseOut
    updated_count: int
    mapping_created: bool


class BulkDeleteIn(BaseModel):
    ids: list[uuid.UUID]


class BulkDeleteOut(BaseModel):
    deleted_count: int


SortField = Literal["date", "amount", "merchant"]
SortDirection = Literal["asc", "desc"]


class HeadlineNumbersOut(BaseModel):
    category_totals: dict[str, Decimal]
    category_averages: dict[str, Decimal]
    total: Decimal
    average: Decimal
    month_count: int
