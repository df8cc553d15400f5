from __future__ import annotations

import threading
import uuid
from collections import defaultdict
from collections.abc import Callable, Sequence
from typing import Any, Protocol

from sqlalchemy.orm import sessionmaker

from spend_stream.core.logging import get_logger, log_event, log_exception
from spend_stream.modules.expenses.schemas import ExpenseOut
from spend_stream.modules.expenses.service import list_expenses
from spend_stream.modules.realtime.events import ACTIONS, EXPENSES, STATEMENTS
from spend_stream.modules.realtime.view import ExpenseView, StatementStatusView
from spend_stream.modules.statements.schemas import StatementOut
from spend_stream.modules.statements.service import list_statements

logger = get_logger(__name__)

Fetcher = Callable[[], list[dict[str, Any]]]
MessageHandler = Callable[[dict[str, Any]], None]


class ViewerBus:
    """Single entry point every transport feeds; carries ``{action, record}`` messages."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handlers: dict[str, list[MessageHandler]] = defaultdict(list)
        self._resync_handlers: list[Callable[[], None]] = []

    def on(self, collection: str, handler: MessageHandler) -> None:
        with self._lock:
            self._handlers[collection].append(handler)

    def on_resync(self, handler: Callable[[], None]) -> None:
        with self._lock:
            self._resync_handlers.append(handler)

    def publish(self, collection: str, message: dict[str, Any]) -> None:
        action = message.get("action")
        if action not in ACTIONS or not isinstance(message.get("record"), dict):
            log_event(logger, "realtime.bus.rejected", collection=collection, action=action)
            return
        with self._lock:
            handlers = list(self._handlers.get(collection, ()))
        normalized = {"action": action, "record": message["record"]}
        for handler in handlers:
            handler(normalized)

    def disconnected(self, source: str, *, error: str | None = None) -> None:
        log_event(logger, "realtime.transport.disconnected", source=source, error=error)

    def resync(self, source: str) -> None:
        """Ask for a full refetch; used after a reconnect or on a poll tick."""
        log_event(logger, "realtime.transport.resync", source=source)
        with self._lock:
            handlers = list(self._resync_handlers)
        for handler in handlers:
            handler()


class Transport(Protocol):
    name: str

    def start(self, bus: ViewerBus) -> None: ...

    def stop(self) -> None: ...


class ViewerSession:
    """One viewer's live views, the transports feeding them and their lifetime.

    Entering fetches the current state and starts every transport; leaving
    stops them all, which releases their subscriptions and connections.
    """

    def __init__(
        self,
        *,
        fetch_expenses: Fetcher,
        fetch_statements: Fetcher | None = None,
        transports: Sequence[Transport] = (),
    ):
        self.bus = ViewerBus()
        self.expenses = ExpenseView()
        self.statements = StatementStatusView()
        self._fetch_expenses = fetch_expenses
        self._fetch_statements = fetch_statements
        self._transports = list(transports)
        self._started: list[Transport] = []
        self.refetch_count = 0
        # Messages arriving mid-refetch wait and land on top of the fresh state.
        self._sync_lock = threading.RLock()

        self.bus.on(EXPENSES, self._apply_expense)
        self.bus.on(STATEMENTS, self._apply_statement)
        self.bus.on_resync(self.refetch)

    def _apply_expense(self, message: dict[str, Any]) -> None:
        with self._sync_lock:
            self.expenses.apply(message)

    def _apply_statement(self, message: dict[str, Any]) -> None:
        with self._sync_lock:
            self.statements.apply(message)

    def refetch(self) -> None:
        """Replace both views from a full fetch."""
        with self._sync_lock:
            self.expenses.replace(self._fetch_expenses())
            if self._fetch_statements is not None:
                self.statements.replace(self._fetch_statements())
            self.refetch_count += 1
        log_event(logger, "realtime.viewer.refetched", expenses=len(self.expenses))

    def __enter__(self) -> ViewerSession:
        self.refetch()
        try:
            for transport in self._transports:
                transport.start(self.bus)
                self._started.append(transport)
        except Exception:
            self.close()
            raise
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def close(self) -> None:
        while self._started:
            transport = self._started.pop()
            try:
                transport.stop()
            except Exception:  # noqa: BLE001
                log_exception(logger, "realtime.transport.stop.error", source=transport.name)


def database_fetchers(
    session_factory: sessionmaker, *, user_id: uuid.UUID
) -> tuple[Fetcher, Fetcher]:
    """Fetchers that read the viewer's rows straight from the database."""

    def _expenses() -> list[dict[str, Any]]:
        with session_factory() as session:
            return _dump(ExpenseOut, list_expenses(session, user_id=user_id))

    def _statements() -> list[dict[str, Any]]:
        with session_factory() as session:
            return _dump(StatementOut, list_statements(session, user_id=user_id))

    return _expenses, _statements


def _dump(schema: type, rows: list[Any]) -> list[dict[str, Any]]:
    return [schema.model_validate(r, from_attributes=True).model_dump(mode="json") for r in rows]
