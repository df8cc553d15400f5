from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

Action = Literal["create", "update", "delete"]
ACTIONS: tuple[str, ...] = ("create", "update", "delete")

EXPENSES = "expenses"
STATEMENTS = "statements"


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


@dataclass(frozen=True)
class ChangeEvent:
    """One committed row change, scoped to the owning user."""

    collection: str
    action: Action
    record: dict[str, Any]
    user_id: str
    ts: str = field(default_factory=_now_iso)

    def envelope(self) -> dict[str, Any]:
        return {"action": self.action, "record": self.record}

    def to_json(self) -> str:
        return json.dumps(
            {
                "collection": self.collection,
                "action": self.action,
                "record": self.record,
                "user_id": self.user_id,
                "ts": self.ts,
            },
            default=str,
        )

    @classmethod
    def from_json(cls, raw: str | bytes) -> ChangeEvent:
        data = json.loads(raw)
        action = data.get("action")
        if action not in ACTIONS:
            raise ValueError(f"Unknown change action: {action!r}")
        return cls(
            collection=str(data["collection"]),
            action=action,
            record=dict(data.get("record") or {}),
            user_id=str(data["user_id"]),
            ts=str(data.get("ts") or _now_iso()),
        )
