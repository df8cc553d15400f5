from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel, Field


class CategoryOut(BaseModel):
    id: uuid.UUID
    name: str
    description: str | None
    is_default: bool
    created_at: datetime
    updated_at: datetime


class CategoryCreateIn(BaseModel):
    name: str = Field(min_length=1, max_length=50)
    description: str | None = None


class CategoryUpdateIn(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=50)
    description: str | None = None


class CategoryDeleteOut(BaseModel):
    deleted: bool = True
    reassigned_count: int | None = None
    deleted_count: int | None = None


class CategoryExpenseCountOut(BaseModel):
    category_id: uuid.UUID
    expense_count: int
