from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from spend_stream.api.router import router as api_router
from spend_stream.bootstrap import bootstrap
from spend_stream.core.db import SessionLocal
from spend_stream.core.logging import (
    RequestContextMiddleware,
    get_logger,
    log_event,
)
from spend_stream.core.storage import build_storage
from spend_stream.modules.realtime.broker import build_broker
from spend_stream.modules.realtime.capture import install_change_capture
from spend_stream.worker.tasks import bind_runtime

logger = get_logger(__name__)


def create_app() -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        bootstrap()
        storage = build_storage()
        broker = build_broker()
        capture = install_change_capture(SessionLocal, broker)
        # Eager tasks run in this process and need the same resources.
        bind_runtime(storage=storage, broker=broker)
        app.state.storage = storage
        app.state.broker = broker
        log_event(
            logger,
            "app.started",
            storage_backend=storage.backend,
            realtime_backend=type(broker).__name__,
        )
        try:
            yield
        finally:
            capture.remove()
            broker.close()

    app = FastAPI(title="Spend Stream", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestContextMiddleware)
    app.include_router(api_router)
    return app


app = create_app()
