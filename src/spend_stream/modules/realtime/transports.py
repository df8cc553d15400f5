"""
Adapters that feed a ``ViewerBus`` from the different change sources.

* ``BrokerTransport``: in-process subscription on the change broker.
* ``SseTransport``: the server's ``/stream/<collection>`` endpoint over httpx;
  reconnects with backoff and asks for a full refetch after every reconnect.
* ``PollingTransport``: periodic invalidation; each tick refetches the views.
"""

from __future__ import annotations

import json
import threading
from collections.abc import Iterable, Iterator, Sequence
from typing import Any

import httpx

from spend_stream.core.logging import get_logger, log_event, log_exception
from spend_stream.modules.realtime.broker import ChangeBroker, Subscription
from spend_stream.modules.realtime.events import EXPENSES, STATEMENTS, ChangeEvent
from spend_stream.modules.realtime.session import ViewerBus

logger = get_logger(__name__)


class BrokerTransport:
    name = "broker"

    def __init__(
        self,
        broker: ChangeBroker,
        *,
        user_id: str,
        collections: Sequence[str] = (EXPENSES, STATEMENTS),
    ):
        self.broker = broker
        self.user_id = str(user_id)
        self.collections = tuple(collections)
        self._subscriptions: list[Subscription] = []

    def start(self, bus: ViewerBus) -> None:
        def _forward(event: ChangeEvent) -> None:
            bus.publish(event.collection, event.envelope())

        for collection in self.collections:
            self._subscriptions.append(
                self.broker.subscribe(user_id=self.user_id, collection=collection, callback=_forward)
            )

    def stop(self) -> None:
        while self._subscriptions:
            self._subscriptions.pop().close()


class PollingTransport:
    name = "polling"

    def __init__(self, *, interval_seconds: float = 30.0):
        self.interval_seconds = interval_seconds
        self._bus: ViewerBus | None = None
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self, bus: ViewerBus) -> None:
        self._bus = bus
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="viewer-poll", daemon=True)
        self._thread.start()

    def tick(self) -> None:
        if self._bus is not None:
            self._bus.resync(self.name)

    def _run(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self.tick()
            except Exception:  # noqa: BLE001
                log_exception(logger, "realtime.poll.error")

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None


def iter_sse_messages(lines: Iterable[str]) -> Iterator[tuple[str, dict[str, Any]]]:
    """Parse ``event:``/``data:`` frames into ``(event_name, payload)`` pairs.

    Comment lines (heartbeats) are skipped, as are frames whose data is not
    a JSON object.
    """
    event_name = "message"
    data: list[str] = []
    for line in lines:
        if line == "":
            if data:
                payload = _decode_frame("\n".join(data))
                if payload is not None:
                    yield event_name, payload
            event_name, data = "message", []
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        value = value[1:] if value.startswith(" ") else value
        if field == "event":
            event_name = value
        elif field == "data":
            data.append(value)
    if data:
        payload = _decode_frame("\n".join(data))
        if payload is not None:
            yield event_name, payload


def _decode_frame(raw: str) -> dict[str, Any] | None:
    try:
        payload = json.loads(raw)
    except ValueError:
        log_event(logger, "realtime.sse.decode_error", byte_size=len(raw))
        return None
    return payload if isinstance(payload, dict) else None


class SseTransport:
    name = "sse"

    def __init__(
        self,
        url: str,
        *,
        token: str | None = None,
        client: httpx.Client | None = None,
        backoff_seconds: float = 1.0,
        max_backoff_seconds: float = 30.0,
    ):
        self.url = url
        self.token = token
        self.backoff_seconds = backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=httpx.Timeout(10.0, read=None))
        self._bus: ViewerBus | None = None
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._connected_once = False
        self.connect_count = 0

    def start(self, bus: ViewerBus) -> None:
        self._bus = bus
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="viewer-sse", daemon=True)
        self._thread.start()

    def run_once(self, bus: ViewerBus) -> None:
        """Hold one connection open until the server ends it or ``stop()`` is called."""
        headers = {"Accept": "text/event-stream"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        with self._client.stream("GET", self.url, headers=headers) as resp:
            resp.raise_for_status()
            self.connect_count += 1
            if self._connected_once:
                # Whatever happened while disconnected is unknown; start over.
                bus.resync(self.name)
            self._connected_once = True
            for collection, message in iter_sse_messages(resp.iter_lines()):
                if self._stop.is_set():
                    return
                bus.publish(collection, message)

    def _run(self) -> None:
        assert self._bus is not None
        delay = self.backoff_seconds
        while not self._stop.is_set():
            connects = self.connect_count
            error: str | None = None
            try:
                self.run_once(self._bus)
            except httpx.HTTPError as e:
                error = type(e).__name__
            except Exception as e:  # noqa: BLE001
                error = type(e).__name__
                log_exception(logger, "realtime.sse.error", url=self.url)
            if self._stop.is_set():
                break
            self._bus.disconnected(self.name, error=error or "stream_closed")
            if self.connect_count > connects:
                delay = self.backoff_seconds
            if self._stop.wait(delay):
                break
            delay = min(delay * 2, self.max_backoff_seconds)

    def stop(self) -> None:
        self._stop.set()
        if self._owns_client:
            self._client.close()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None
