from __future__ import annotations

import contextvars
import json
import logging
import os
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

_request_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "request_id", default=None
)
_user_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "user_id", default=None
)
_task_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "celery_task_id", default=None
)
_statement_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "statement_id", default=None
)

_CONTEXT_FIELDS: tuple[tuple[str, contextvars.ContextVar[str | None]], ...] = (
    ("request_id", _request_id_var),
    ("user_id", _user_id_var),
    ("celery_task_id", _task_id_var),
    ("statement_id", _statement_id_var),
)

_configured = False


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat()
        if ts.endswith("+00:00"):
            ts = ts[:-6] + "Z"
        payload: dict[str, Any] = {
            "ts": ts,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        event = getattr(record, "event", None)
        if event:
            payload["event"] = event
        fields = getattr(record, "fields", None)
        if isinstance(fields, dict):
            payload.update({k: v for k, v in fields.items() if v is not None})
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str, ensure_ascii=True)


def configure_logging() -> None:
    global _configured  # noqa: PLW0603
    if _configured:
        return
    level_name = os.getenv("LOG_LEVEL", "INFO").upper()
    level = logging.getLevelNamesMapping().get(level_name, logging.INFO)
    handler = logging.StreamHandler()
    handler.setLevel(level)
    handler.setFormatter(JsonFormatter())
    logger = logging.getLogger("spend_stream")
    logger.setLevel(level)
    logger.handlers = [handler]
    logger.propagate = False
    _configured = True


def get_logger(name: str) -> logging.Logger:
    configure_logging()
    return logging.getLogger(name)


def set_user_context(user_id: str | None) -> None:
    _user_id_var.set(user_id)


def get_request_id() -> str | None:
    return _request_id_var.get()


@contextmanager
def bound_context(
    *,
    request_id: str | None = None,
    task_id: str | None = None,
    statement_id: str | None = None,
) -> Iterator[None]:
    """Bind correlation ids for the duration of a request, task or ingestion run.

    Only the ids that are passed are rebound; the others keep their outer value.
    """
    tokens: list[tuple[contextvars.ContextVar[str | None], contextvars.Token]] = []
    for var, value in (
        (_request_id_var, request_id),
        (_task_id_var, task_id),
        (_statement_id_var, statement_id),
    ):
        if value is not None:
            tokens.append((var, var.set(value)))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def _merge_fields(fields: dict[str, Any]) -> dict[str, Any]:
    payload: dict[str, Any] = {}
    for name, var in _CONTEXT_FIELDS:
        value = var.get()
        if value:
            payload[name] = value
    for key, value in fields.items():
        if value is None:
            continue
        payload[key] = value
    return payload


def log_event(
    logger: logging.Logger, event: str, *, level: int = logging.INFO, **fields: Any
) -> None:
    payload = _merge_fields(fields)
    logger.log(level, event, extra={"event": event, "fields": payload})


def log_exception(logger: logging.Logger, event: str, **fields: Any) -> None:
    payload = _merge_fields(fields)
    logger.exception(event, extra={"event": event, "fields": payload})


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        user_token = _user_id_var.set(None)
        try:
            with bound_context(request_id=request_id):
                try:
                    response = await call_next(request)
                except Exception:
                    log_exception(
                        get_logger(__name__),
                        "http.request.error",
                        method=request.method,
                        path=request.url.path,
                        query=str(request.url.query) if request.url.query else None,
                    )
                    raise
            response.headers["x-request-id"] = request_id
            return response
        finally:
            _user_id_var.reset(user_token)


def monotonic_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)
