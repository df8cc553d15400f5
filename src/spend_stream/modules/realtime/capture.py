"""
Change capture: turns committed ORM changes into broker events.

Rows of tracked models touched by a flush are serialized immediately and
parked on ``session.info``; they are published only once the outermost
transaction commits. A rolled-back savepoint drops the events it produced,
a rolled-back root transaction drops everything.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from sqlalchemy import event
from sqlalchemy.orm import Session, SessionTransaction, sessionmaker

from spend_stream.core.logging import get_logger, log_event, log_exception
from spend_stream.modules.expenses.models import Expense
from spend_stream.modules.expenses.schemas import ExpenseOut
from spend_stream.modules.realtime.broker import ChangeBroker
from spend_stream.modules.realtime.events import EXPENSES, STATEMENTS, Action, ChangeEvent
from spend_stream.modules.statements.models import Statement
from spend_stream.modules.statements.schemas import StatementOut

logger = get_logger(__name__)

_PENDING_KEY = "spend_stream.pending_changes"


def _expense_record(expense: Expense) -> dict[str, Any]:
    return ExpenseOut.model_validate(expense, from_attributes=True).model_dump(mode="json")


def _statement_record(statement: Statement) -> dict[str, Any]:
    return StatementOut.model_validate(statement, from_attributes=True).model_dump(mode="json")


_TRACKED: dict[type, tuple[str, Callable[[Any], dict[str, Any]]]] = {
    Expense: (EXPENSES, _expense_record),
    Statement: (STATEMENTS, _statement_record),
}


@dataclass
class _Pending:
    txn: SessionTransaction | None
    event: ChangeEvent


def _current_txn(session: Session) -> SessionTransaction | None:
    return session.get_nested_transaction() or session.get_transaction()


def _pending(session: Session) -> list[_Pending]:
    return session.info.setdefault(_PENDING_KEY, [])


def _make_event(instance: Any, action: Action) -> ChangeEvent | None:
    tracked = _TRACKED.get(type(instance))
    if tracked is None:
        return None
    collection, serialize = tracked
    return ChangeEvent(
        collection=collection,
        action=action,
        record=serialize(instance),
        user_id=str(instance.user_id),
    )


def record_change(session: Session, instance: Any, action: Action) -> None:
    """Queue an event for a change the unit of work cannot see (bulk or Core UPDATE)."""
    if not _captures:
        return
    change = _make_event(instance, action)
    if change is not None:
        _pending(session).append(_Pending(txn=_current_txn(session), event=change))


class ChangeCapture:
    def __init__(self, session_factory: sessionmaker, broker: ChangeBroker):
        self.session_factory = session_factory
        self.broker = broker
        self._listeners: list[tuple[str, Callable]] = [
            ("before_flush", self._before_flush),
            ("after_flush", self._after_flush),
            ("after_commit", self._after_commit),
            ("after_rollback", self._after_rollback),
        ]
        for name, fn in self._listeners:
            event.listen(session_factory, name, fn)

    def remove(self) -> None:
        for name, fn in self._listeners:
            event.remove(self.session_factory, name, fn)
        _captures.pop(id(self.session_factory), None)

    def _before_flush(self, session: Session, flush_context, instances) -> None:
        # Deleted rows must be serialized while they still exist.
        for obj in list(session.deleted):
            record_change(session, obj, "delete")

    def _after_flush(self, session: Session, flush_context) -> None:
        for obj in list(session.new):
            record_change(session, obj, "create")
        for obj in list(session.dirty):
            if obj in session.deleted:
                continue
            if session.is_modified(obj, include_collections=False):
                record_change(session, obj, "update")

    def _after_rollback(self, session: Session) -> None:
        pending = session.info.get(_PENDING_KEY)
        if not pending:
            return
        savepoint = session.get_nested_transaction()
        if savepoint is None:
            pending.clear()
            return
        pending[:] = [p for p in pending if p.txn is not savepoint]

    def _after_commit(self, session: Session) -> None:
        pending = session.info.get(_PENDING_KEY)
        if not pending:
            return
        savepoint = session.get_nested_transaction()
        if savepoint is not None:
            # Savepoint release: its events now belong to the enclosing transaction.
            for p in pending:
                if p.txn is savepoint:
                    p.txn = savepoint.parent
            return
        events = [p.event for p in pending]
        pending.clear()
        for change in events:
            try:
                self.broker.publish(change)
            except Exception:  # noqa: BLE001
                log_exception(
                    logger,
                    "realtime.publish.error",
                    collection=change.collection,
                    action=change.action,
                )
        log_event(logger, "realtime.published", level=logging.DEBUG, count=len(events))


_captures: dict[int, ChangeCapture] = {}


def install_change_capture(session_factory: sessionmaker, broker: ChangeBroker) -> ChangeCapture:
    """Attach capture hooks to a session factory; reinstalling swaps the broker."""
    existing = _captures.get(id(session_factory))
    if existing is not None:
        existing.broker = broker
        return existing
    capture = ChangeCapture(session_factory, broker)
    _captures[id(session_factory)] = capture
    return capture
