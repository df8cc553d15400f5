from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Literal

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from spend_stream.api.deps import get_broker, get_current_user
from spend_stream.core.config import settings
from spend_stream.core.logging import get_logger, log_event
from spend_stream.modules.identity.models import User
from spend_stream.modules.realtime.broker import ChangeBroker
from spend_stream.modules.realtime.events import ChangeEvent

router = APIRouter(tags=["realtime"])
logger = get_logger(__name__)

HEARTBEAT = ": heartbeat\n\n"


def format_sse(event: ChangeEvent) -> str:
    return f"event: {event.collection}\ndata: {json.dumps(event.envelope(), default=str)}\n\n"


async def change_stream(
    broker: ChangeBroker,
    *,
    user_id: str,
    collection: str,
    is_disconnected: Callable[[], Awaitable[bool]] | None = None,
    heartbeat_seconds: float | None = None,
) -> AsyncIterator[str]:
    """SSE frames for one owner's collection; the subscription lives exactly as long as this."""
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue[ChangeEvent] = asyncio.Queue()
    heartbeat = heartbeat_seconds or settings.sse_heartbeat_seconds

    def _enqueue(event: ChangeEvent) -> None:
        loop.call_soon_threadsafe(queue.put_nowait, event)

    subscription = broker.subscribe(user_id=user_id, collection=collection, callback=_enqueue)
    log_event(logger, "realtime.sse.open", collection=collection)
    sent = 0
    try:
        yield ": connected\n\n"
        while True:
            if is_disconnected is not None and await is_disconnected():
                break
            try:
                event = await asyncio.wait_for(queue.get(), timeout=heartbeat)
            except asyncio.TimeoutError:
                yield HEARTBEAT
                continue
            sent += 1
            yield format_sse(event)
    finally:
        subscription.close()
        log_event(logger, "realtime.sse.close", collection=collection, sent=sent)


@router.get("/stream/{collection}")
async def stream_changes(
    collection: Literal["expenses", "statements"],
    request: Request,
    user: User = Depends(get_current_user),
    broker: ChangeBroker = Depends(get_broker),
) -> StreamingResponse:
    frames = change_stream(
        broker,
        user_id=str(user.id),
        collection=collection,
        is_disconnected=request.is_disconnected,
    )
    return StreamingResponse(
        frames,
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
