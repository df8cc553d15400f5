from __future__ import annotations

# Ensure all models are registered before any task runs
# isort: off
import spend_stream.models  # noqa: F401
# isort: on

import time
import uuid
from dataclasses import dataclass

from celery.signals import worker_process_init

from spend_stream.core.db import SessionLocal
from spend_stream.core.logging import (
    bound_context,
    get_logger,
    log_event,
    log_exception,
    monotonic_ms,
)
from spend_stream.core.storage import ObjectStorage, build_storage
from spend_stream.modules.realtime.broker import ChangeBroker, build_broker
from spend_stream.modules.realtime.capture import install_change_capture
from spend_stream.worker.celery_app import celery_app

logger = get_logger(__name__)


@dataclass
class WorkerRuntime:
    storage: ObjectStorage
    broker: ChangeBroker


_runtime: WorkerRuntime | None = None


def bind_runtime(*, storage: ObjectStorage, broker: ChangeBroker) -> WorkerRuntime:
    """Hand the process-wide storage and broker to task code."""
    global _runtime
    _runtime = WorkerRuntime(storage=storage, broker=broker)
    return _runtime


def get_runtime() -> WorkerRuntime:
    if _runtime is None:
        raise RuntimeError("Worker runtime is not bound; call bind_runtime() at startup")
    return _runtime


@worker_process_init.connect
def _init_worker_process(**_: object) -> None:
    storage = build_storage()
    broker = build_broker()
    install_change_capture(SessionLocal, broker)
    bind_runtime(storage=storage, broker=broker)
    log_event(logger, "celery.worker.ready", storage_backend=storage.backend)


def run_ingestion(statement_id: str) -> None:
    from spend_stream.modules.ingestion.service import ingest_statement

    runtime = get_runtime()
    with SessionLocal() as session:
        ingest_statement(session, storage=runtime.storage, statement_id=uuid.UUID(statement_id))


@celery_app.task(name="ingest_statement", bind=True)
def ingest_statement_task(self, statement_id: str) -> None:
    task_id = getattr(self.request, "id", None)
    start = time.monotonic()
    with bound_context(task_id=task_id):
        log_event(
            logger,
            "celery.task.start",
            task_name="ingest_statement",
            statement_id=statement_id,
        )
        try:
            run_ingestion(statement_id)
            log_event(
                logger,
                "celery.task.finish",
                task_name="ingest_statement",
                statement_id=statement_id,
                duration_ms=monotonic_ms(start),
            )
        except Exception:
            log_exception(
                logger,
                "celery.task.error",
                task_name="ingest_statement",
                statement_id=statement_id,
                duration_ms=monotonic_ms(start),
            )
            raise
