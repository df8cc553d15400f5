from __future__ import annotations

import threading
from collections import defaultdict
from collections.abc import Callable
from typing import Any

from redis import Redis

from spend_stream.core.config import Settings, settings
from spend_stream.core.logging import get_logger, log_event, log_exception
from spend_stream.modules.realtime.events import ChangeEvent

logger = get_logger(__name__)

Callback = Callable[[ChangeEvent], None]


def channel_name(collection: str, user_id: str) -> str:
    return f"spend_stream:{collection}:{user_id}"


class Subscription:
    def __init__(self, *, channel: str, on_close: Callable[[], None]):
        self.channel = channel
        self._on_close = on_close
        self._closed = False
        self._lock = threading.Lock()

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._on_close()
        log_event(logger, "realtime.unsubscribe", channel=self.channel)

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()


class ChangeBroker:
    def publish(self, event: ChangeEvent) -> None:  # pragma: no cover
        raise NotImplementedError

    def subscribe(
        self, *, user_id: str, collection: str, callback: Callback
    ) -> Subscription:  # pragma: no cover
        raise NotImplementedError

    def close(self) -> None:
        pass


def _deliver(callback: Callback, event: ChangeEvent, channel: str) -> None:
    try:
        callback(event)
    except Exception:  # noqa: BLE001
        log_exception(logger, "realtime.deliver.error", channel=channel, action=event.action)


class LocalChangeBroker(ChangeBroker):
    """In-process fan-out; callbacks run synchronously on the publishing thread."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: dict[str, dict[int, Callback]] = defaultdict(dict)
        self._next_id = 0

    def publish(self, event: ChangeEvent) -> None:
        channel = channel_name(event.collection, event.user_id)
        with self._lock:
            callbacks = list(self._subscribers.get(channel, {}).values())
        for callback in callbacks:
            _deliver(callback, event, channel)

    def subscribe(self, *, user_id: str, collection: str, callback: Callback) -> Subscription:
        channel = channel_name(collection, user_id)
        with self._lock:
            self._next_id += 1
            token = self._next_id
            self._subscribers[channel][token] = callback

        def _remove() -> None:
            with self._lock:
                bucket = self._subscribers.get(channel)
                if bucket is not None:
                    bucket.pop(token, None)
                    if not bucket:
                        self._subscribers.pop(channel, None)

        log_event(logger, "realtime.subscribe", backend="local", channel=channel)
        return Subscription(channel=channel, on_close=_remove)

    def subscriber_count(self, *, user_id: str, collection: str) -> int:
        with self._lock:
            return len(self._subscribers.get(channel_name(collection, user_id), {}))


class RedisChangeBroker(ChangeBroker):
    """Redis pub/sub, so API processes see commits made by Celery workers."""

    def __init__(self, url: str, *, client: Redis | None = None):
        self._client = client or Redis.from_url(url)

    def publish(self, event: ChangeEvent) -> None:
        self._client.publish(channel_name(event.collection, event.user_id), event.to_json())

    def subscribe(self, *, user_id: str, collection: str, callback: Callback) -> Subscription:
        channel = channel_name(collection, user_id)
        pubsub = self._client.pubsub(ignore_subscribe_messages=True)

        def _handler(message: dict[str, Any]) -> None:
            try:
                event = ChangeEvent.from_json(message["data"])
            except (ValueError, KeyError, TypeError):
                log_exception(logger, "realtime.decode.error", channel=channel)
                return
            _deliver(callback, event, channel)

        pubsub.subscribe(**{channel: _handler})
        worker = pubsub.run_in_thread(sleep_time=0.1, daemon=True)

        def _stop() -> None:
            worker.stop()
            pubsub.close()

        log_event(logger, "realtime.subscribe", backend="redis", channel=channel)
        return Subscription(channel=channel, on_close=_stop)

    def close(self) -> None:
        self._client.close()


def build_broker(cfg: Settings = settings) -> ChangeBroker:
    if cfg.realtime_backend == "redis":
        return RedisChangeBroker(cfg.redis_url)
    return LocalChangeBroker()
