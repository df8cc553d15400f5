from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel, Field


class MerchantMappingOut(BaseModel):
    id: uuid.UUID
    merchant_name: str
    category: str
    created_at: datetime
    updated_at: datetime


class MerchantMappingCreateIn(BaseModel):
    merchant_name: str = Field(min_length=1, max_length=200)
    category: str = Field(min_length=1, max_length=50)
    apply_to_existing: bool = False


class MerchantMappingUpdateIn(BaseModel):
    category: str = Field(min_length=1, max_length=50)
    apply_to_existing: bool = False


class MerchantMappingWriteOut(BaseModel):
    mapping: MerchantMappingOut
    updated_count: int = 0
