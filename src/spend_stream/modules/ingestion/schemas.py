from __future__ import annotations

from pydantic import BaseModel, Field


class IngestionPromptIn(BaseModel):
    prompt: str = Field(default="", max_length=4000)


class IngestionPromptOut(BaseModel):
    prompt: str
