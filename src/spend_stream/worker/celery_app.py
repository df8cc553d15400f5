from __future__ import annotations

from celery import Celery

from spend_stream.core.config import settings


def make_celery() -> Celery:
    app = Celery("spend_stream", broker=settings.redis_url, backend=settings.redis_url)
    app.conf.update(
        task_always_eager=settings.environment == "dev",
        # A failed ingestion is reported through the statement status, never
        # through the upload request that enqueued it.
        task_eager_propagates=False,
        task_track_started=True,
        # One statement streams for minutes; redelivery after a worker crash is
        # safe because terminal statements are skipped and lines dedupe on hash.
        task_acks_late=True,
        worker_prefetch_multiplier=1,
    )
    app.autodiscover_tasks(["spend_stream.worker.tasks"])
    return app


celery_app = make_celery()
