"""
Per-viewer live views over change messages.

Both views consume the uniform ``{"action", "record"}`` message shape and are
idempotent: replaying a message leaves the view as it was after the first
delivery.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from spend_stream.core.logging import get_logger, log_event

logger = get_logger(__name__)


@dataclass(frozen=True)
class ExpenseRow:
    record: dict[str, Any]
    is_duplicate: bool

    @property
    def id(self) -> str:
        return str(self.record.get("id"))


def _amount_key(raw: Any) -> Decimal | str:
    try:
        return Decimal(str(raw)).normalize()
    except (InvalidOperation, ValueError):
        return str(raw)


def duplicate_key(record: dict[str, Any]) -> tuple[str, str, Decimal | str]:
    """Date, trimmed lowercased merchant and amount; description is deliberately left out."""
    merchant = str(record.get("merchant") or "").strip().lower()
    return (str(record.get("transaction_date") or ""), merchant, _amount_key(record.get("amount")))


def recalculate_duplicates(records: list[dict[str, Any]]) -> list[ExpenseRow]:
    """Flag every repeat of a key after its first occurrence in display order."""
    seen: set[tuple[str, str, Decimal | str]] = set()
    rows: list[ExpenseRow] = []
    for record in records:
        key = duplicate_key(record)
        rows.append(ExpenseRow(record=record, is_duplicate=key in seen))
        seen.add(key)
    return rows


def _display_sort(records: list[dict[str, Any]]) -> list[dict[str, Any]]:
    # Stable: rows sharing a date keep their relative (newest first) order.
    return sorted(records, key=lambda r: str(r.get("transaction_date") or ""), reverse=True)


class ExpenseView:
    """Ordered, duplicate-flagged expense list for one viewer."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: list[dict[str, Any]] = []
        self._rows: list[ExpenseRow] = []

    def replace(self, records: list[dict[str, Any]]) -> None:
        """Swap in a fresh fetch wholesale; flags are computed from scratch."""
        with self._lock:
            self._records = _display_sort([dict(r) for r in records])
            self._rows = recalculate_duplicates(self._records)

    def apply(self, message: dict[str, Any]) -> None:
        action = message.get("action")
        record = dict(message.get("record") or {})
        record_id = str(record.get("id") or "")
        if not record_id:
            log_event(logger, "realtime.view.ignored", reason="missing_id", action=action)
            return

        with self._lock:
            index = self._index_of(record_id)
            if action == "create":
                if index is None:
                    self._records.insert(0, record)
                else:
                    self._records[index] = {**self._records[index], **record}
            elif action == "update":
                if index is None:
                    return
                self._records[index] = {**self._records[index], **record}
            elif action == "delete":
                if index is None:
                    return
                del self._records[index]
            else:
                log_event(logger, "realtime.view.ignored", reason="unknown_action", action=action)
                return
            self._records = _display_sort(self._records)
            self._rows = recalculate_duplicates(self._records)

    def _index_of(self, record_id: str) -> int | None:
        for i, existing in enumerate(self._records):
            if str(existing.get("id")) == record_id:
                return i
        return None

    def rows(self) -> list[ExpenseRow]:
        with self._lock:
            return list(self._rows)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


def _parse_ts(raw: Any) -> datetime | None:
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


class StatementStatusView:
    """Statement list where the record's own ``updated_at`` decides which write wins."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[str, dict[str, Any]] = {}
        self._deleted: dict[str, datetime | None] = {}

    def replace(self, records: list[dict[str, Any]]) -> None:
        with self._lock:
            self._records = {str(r["id"]): dict(r) for r in records if r.get("id")}
            self._deleted = {}

    def apply(self, message: dict[str, Any]) -> None:
        action = message.get("action")
        record = dict(message.get("record") or {})
        record_id = str(record.get("id") or "")
        if not record_id:
            return
        incoming = _parse_ts(record.get("updated_at"))

        with self._lock:
            if action == "delete":
                self._records.pop(record_id, None)
                self._deleted[record_id] = incoming
                return

            if record_id in self._deleted:
                tombstone = self._deleted[record_id]
                if tombstone is None or incoming is None or incoming <= tombstone:
                    return
                del self._deleted[record_id]

            current = self._records.get(record_id)
            if current is not None:
                known = _parse_ts(current.get("updated_at"))
                if known is not None and incoming is not None and incoming < known:
                    log_event(
                        logger,
                        "realtime.view.stale",
                        statement_id=record_id,
                        incoming=record.get("updated_at"),
                        known=current.get("updated_at"),
                    )
                    return
                self._records[record_id] = {**current, **record}
            else:
                self._records[record_id] = record

    def get(self, statement_id: str) -> dict[str, Any] | None:
        with self._lock:
            found = self._records.get(str(statement_id))
            return dict(found) if found else None

    def records(self) -> list[dict[str, Any]]:
        with self._lock:
            values = list(self._records.values())
        return sorted(values, key=_recency, reverse=True)


def _recency(record: dict[str, Any]) -> float:
    ts = _parse_ts(record.get("updated_at"))
    return ts.timestamp() if ts else float("-inf")
