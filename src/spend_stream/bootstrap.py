from __future__ import annotations

import spend_stream.models  # noqa: F401
from spend_stream.core.config import settings
from spend_stream.core.db import engine
from spend_stream.core.logging import get_logger, log_event
from spend_stream.core.models import Base

logger = get_logger(__name__)


def bootstrap() -> None:
    if settings.environment == "dev" and str(settings.database_url).startswith("sqlite"):
        Base.metadata.create_all(engine)
        log_event(logger, "bootstrap.schema.created", database="sqlite")
