from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    environment: str = "dev"
    base_url: str = "http://localhost:8000"
    secret_key: str = "change-me"

    database_url: str = "sqlite:///./spend_stream.db"
    sqlite_busy_timeout_seconds: float = 30.0
    redis_url: str = "redis://localhost:6379/0"

    storage_backend: Literal["local", "s3"] = "local"
    local_storage_path: Path = Path(".local_storage")
    storage_public_base_url: str | None = None

    s3_endpoint_url: str | None = None
    s3_region: str | None = None
    s3_bucket: str = "statements"
    s3_access_key_id: str | None = None
    s3_secret_access_key: str | None = None

    access_token_exp_minutes: int = 60 * 24

    base_currency: str = "SGD"

    openai_api_key: str | None = None
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "gpt-4.1-mini"
    extraction_timeout_seconds: float = 180.0

    fx_api_url: str = "https://api.frankfurter.app"
    fx_timeout_seconds: float = 10.0

    max_upload_bytes: int = 10 * 1024 * 1024
    max_categories_per_user: int = 20
    # Testing aid: a random checksum replaces the content checksum so the same
    # PDF can be uploaded repeatedly.
    disable_duplicate_detection: bool = False

    realtime_backend: Literal["local", "redis"] = "local"
    sse_heartbeat_seconds: float = 15.0


settings = Settings()
