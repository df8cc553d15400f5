from __future__ import annotations

import asyncio
import json
import threading
import time
from datetime import date
from decimal import Decimal

import httpx
import pytest

from conftest import add_expense, make_pdf
from spend_stream.core.db import SessionLocal
from spend_stream.modules.categories.service import get_or_create_category
from spend_stream.modules.expenses.models import Expense
from spend_stream.modules.realtime.api import HEARTBEAT, change_stream
from spend_stream.modules.realtime.broker import LocalChangeBroker
from spend_stream.modules.realtime.events import EXPENSES, STATEMENTS, ChangeEvent
from spend_stream.modules.realtime.session import ViewerSession, database_fetchers
from spend_stream.modules.realtime.transports import (
    BrokerTransport,
    PollingTransport,
    SseTransport,
    iter_sse_messages,
)
from spend_stream.modules.statements.service import create_statement, mark_completed


def _live_session(broker, user):
    fetch_expenses, fetch_statements = database_fetchers(SessionLocal, user_id=user.id)
    return ViewerSession(
        fetch_expenses=fetch_expenses,
        fetch_statements=fetch_statements,
        transports=[BrokerTransport(broker, user_id=str(user.id))],
    )


def test_committed_expenses_reach_the_view_with_duplicate_flags(broker, user):
    with _live_session(broker, user) as viewer:
        assert len(viewer.expenses) == 0
        with SessionLocal() as session:
            add_expense(
                session,
                user_id=user.id,
                transaction_date=date(2024, 1, 5),
                description="Coffee",
                amount="5.00",
                merchant="Starbucks",
            )
            add_expense(
                session,
                user_id=user.id,
                transaction_date=date(2024, 1, 5),
                description="Latte",
                amount="5.00",
                merchant="STARBUCKS",
            )
            add_expense(
                session,
                user_id=user.id,
                transaction_date=date(2024, 1, 5),
                description="Muffin",
                amount="5.01",
                merchant="Starbucks",
            )

        rows = viewer.expenses.rows()
        assert len(rows) == 3
        flagged = [r.record["description"] for r in rows if r.is_duplicate]
        assert len(flagged) == 1
        assert flagged[0] in {"Coffee", "Latte"}
        assert not any(r.is_duplicate for r in rows if r.record["description"] == "Muffin")


def test_edits_and_deletes_are_streamed(broker, user):
    from spend_stream.modules.expenses.service import delete_expense, update_expense

    with SessionLocal() as session:
        expense = add_expense(
            session,
            user_id=user.id,
            transaction_date=date(2024, 2, 1),
            description="Taxi",
            amount="12.00",
            merchant="Grab",
        )
        expense_id = expense.id

    with _live_session(broker, user) as viewer:
        assert [r.record["description"] for r in viewer.expenses.rows()] == ["Taxi"]

        with SessionLocal() as session:
            update_expense(
                session,
                user_id=user.id,
                expense_id=expense_id,
                changes={"description": "Taxi home"},
            )
        assert viewer.expenses.rows()[0].record["description"] == "Taxi home"

        with SessionLocal() as session:
            delete_expense(session, user_id=user.id, expense_id=expense_id)
        assert viewer.expenses.rows() == []


def test_statement_status_change_is_streamed(broker, storage, user):
    with SessionLocal() as session:
        statement = create_statement(
            session,
            storage=storage,
            user_id=user.id,
            filename="jan.pdf",
            content_type="application/pdf",
            body=make_pdf(1, marker="jan"),
        )
        statement_id = statement.id

    with _live_session(broker, user) as viewer:
        assert viewer.statements.get(str(statement_id))["status"] == "processing"
        with SessionLocal() as session:
            assert mark_completed(session, statement_id=statement_id, expense_count=4)
        current = viewer.statements.get(str(statement_id))
        assert current["status"] == "completed"
        assert current["expense_count"] == 4


def test_rolled_back_changes_are_never_published(broker, user):
    received: list[ChangeEvent] = []
    subscription = broker.subscribe(
        user_id=str(user.id), collection=EXPENSES, callback=received.append
    )
    try:
        with SessionLocal() as session:
            category = get_or_create_category(session, user_id=user.id, name="Dining")
            session.commit()

            nested = session.begin_nested()
            session.add(_expense(user.id, category, "Discarded"))
            session.flush()
            nested.rollback()

            session.add(_expense(user.id, category, "Kept"))
            session.commit()

            session.add(_expense(user.id, category, "Never committed"))
            session.flush()
            session.rollback()
    finally:
        subscription.close()

    assert [(e.action, e.record["description"]) for e in received] == [("create", "Kept")]
    assert received[0].user_id == str(user.id)


def _expense(user_id, category, description):
    return Expense(
        user_id=user_id,
        transaction_date=date(2024, 3, 1),
        description=description,
        merchant="Cafe",
        amount=Decimal("4.50"),
        currency="SGD",
        original_amount=Decimal("4.50"),
        original_currency="SGD",
        fx_rate=Decimal("1"),
        category_id=category.id,
        category=category.name,
        line_hash=description.lower().replace(" ", "-"),
    )


def test_other_users_changes_are_not_delivered(broker, user):
    from spend_stream.modules.identity.service import register_user

    with SessionLocal() as session:
        other = register_user(session, email="other@spendstream.io", password="password123")
        other_id = other.id

    with _live_session(broker, user) as viewer:
        with SessionLocal() as session:
            add_expense(
                session,
                user_id=other_id,
                transaction_date=date(2024, 1, 1),
                description="Not mine",
                amount="1.00",
            )
        assert len(viewer.expenses) == 0


def test_leaving_the_session_releases_subscriptions(user):
    broker = LocalChangeBroker()
    fetch_expenses, fetch_statements = database_fetchers(SessionLocal, user_id=user.id)
    viewer = ViewerSession(
        fetch_expenses=fetch_expenses,
        fetch_statements=fetch_statements,
        transports=[BrokerTransport(broker, user_id=str(user.id))],
    )
    with viewer:
        assert broker.subscriber_count(user_id=str(user.id), collection=EXPENSES) == 1
        assert broker.subscriber_count(user_id=str(user.id), collection=STATEMENTS) == 1
    assert broker.subscriber_count(user_id=str(user.id), collection=EXPENSES) == 0
    assert broker.subscriber_count(user_id=str(user.id), collection=STATEMENTS) == 0


def test_failed_transport_start_stops_the_ones_already_started(user):
    broker = LocalChangeBroker()

    class _Broken:
        name = "broken"

        def start(self, bus):
            raise ConnectionError("nope")

        def stop(self):
            raise AssertionError("never started")

    viewer = ViewerSession(
        fetch_expenses=lambda: [],
        transports=[BrokerTransport(broker, user_id=str(user.id)), _Broken()],
    )
    with pytest.raises(ConnectionError):
        viewer.__enter__()
    assert broker.subscriber_count(user_id=str(user.id), collection=EXPENSES) == 0


def _row(id_, description, amount="5.00", merchant="Starbucks"):
    return {
        "id": id_,
        "transaction_date": "2024-01-05",
        "merchant": merchant,
        "amount": amount,
        "description": description,
    }


def test_resync_replaces_stale_state_with_a_fresh_fetch():
    backing = [_row("a", "Coffee")]
    viewer = ViewerSession(fetch_expenses=lambda: list(backing))
    with viewer:
        # Missed while disconnected: a duplicate arrived and "a" was edited.
        backing = [_row("b", "Latte"), _row("a", "Coffee", amount="5.00")]
        viewer.bus.publish(EXPENSES, {"action": "update", "record": {"id": "a", "amount": "9.99"}})
        assert [r.is_duplicate for r in viewer.expenses.rows()] == [False]

        viewer.bus.resync("sse")

        rows = viewer.expenses.rows()
        assert [r.id for r in rows] == ["b", "a"]
        assert [r.is_duplicate for r in rows] == [False, True]
        assert rows[1].record["amount"] == "5.00"
        assert viewer.refetch_count == 2


def test_change_arriving_during_refetch_is_kept():
    started = threading.Event()

    def _publish():
        started.set()
        viewer.bus.publish(EXPENSES, {"action": "create", "record": _row("b", "Latte")})

    publisher = threading.Thread(target=_publish)

    def _fetch():
        # "b" is committed after this snapshot was read and delivered while it is in flight.
        publisher.start()
        started.wait(timeout=5)
        time.sleep(0.05)
        return [_row("a", "Coffee")]

    viewer = ViewerSession(fetch_expenses=_fetch)
    viewer.refetch()
    publisher.join(timeout=5)

    assert sorted(r.id for r in viewer.expenses.rows()) == ["a", "b"]


def test_bus_rejects_malformed_messages():
    viewer = ViewerSession(fetch_expenses=lambda: [])
    with viewer:
        viewer.bus.publish(EXPENSES, {"action": "upsert", "record": _row("a", "Coffee")})
        viewer.bus.publish(EXPENSES, {"action": "create", "record": None})
        viewer.bus.publish(EXPENSES, {"action": "create", "record": _row("b", "Tea"), "ts": "x"})
    assert [r.id for r in viewer.expenses.rows()] == ["b"]


def test_polling_tick_refetches():
    calls = []

    def _fetch():
        calls.append(1)
        return [_row(str(len(calls)), "Coffee")]

    poller = PollingTransport(interval_seconds=3600)
    with ViewerSession(fetch_expenses=_fetch, transports=[poller]) as viewer:
        poller.tick()
        poller.tick()
        assert viewer.refetch_count == 3
        assert [r.id for r in viewer.expenses.rows()] == ["3"]


def test_iter_sse_messages_skips_comments_and_bad_frames():
    lines = [
        ": connected",
        "",
        "event: expenses",
        'data: {"action": "create", "record": {"id": "a"}}',
        "",
        ": heartbeat",
        "",
        "event: statements",
        "data: not json",
        "",
        "data: [1, 2]",
        "",
        "event: statements",
        'data: {"action": "update",',
        'data:  "record": {"id": "s1"}}',
    ]
    assert list(iter_sse_messages(lines)) == [
        ("expenses", {"action": "create", "record": {"id": "a"}}),
        ("statements", {"action": "update", "record": {"id": "s1"}}),
    ]


def test_sse_transport_publishes_frames_and_resyncs_after_reconnect():
    seen_auth = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen_auth.append(request.headers.get("Authorization"))
        body = (
            ": connected\n\n"
            "event: expenses\n"
            f"data: {json.dumps({'action': 'create', 'record': _row('n1', 'Lunch')})}\n\n"
            f"{HEARTBEAT}"
        )
        return httpx.Response(200, headers={"Content-Type": "text/event-stream"}, text=body)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    transport = SseTransport(
        "http://testserver/api/stream/expenses", token="tkn", client=client
    )
    backing = [_row("a", "Coffee")]
    with ViewerSession(fetch_expenses=lambda: list(backing)) as viewer:
        transport.run_once(viewer.bus)
        assert viewer.refetch_count == 1
        assert {r.id for r in viewer.expenses.rows()} == {"a", "n1"}

        transport.run_once(viewer.bus)
        assert viewer.refetch_count == 2
        assert {r.id for r in viewer.expenses.rows()} == {"a", "n1"}

    assert transport.connect_count == 2
    assert seen_auth == ["Bearer tkn", "Bearer tkn"]
    client.close()


def test_sse_transport_raises_on_rejected_connection():
    client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(401)))
    transport = SseTransport("http://testserver/api/stream/expenses", client=client)
    with ViewerSession(fetch_expenses=lambda: []) as viewer:
        with pytest.raises(httpx.HTTPStatusError):
            transport.run_once(viewer.bus)
    assert transport.connect_count == 0
    client.close()


def test_change_stream_frames_heartbeats_and_releases_subscription():
    broker = LocalChangeBroker()

    async def _consume() -> list[str]:
        frames = change_stream(
            broker, user_id="u1", collection=EXPENSES, heartbeat_seconds=0.05
        )
        out = [await anext(frames)]
        assert broker.subscriber_count(user_id="u1", collection=EXPENSES) == 1

        broker.publish(
            ChangeEvent(
                collection=EXPENSES,
                action="create",
                record={"id": "e1", "amount": "5.00"},
                user_id="u1",
            )
        )
        out.append(await anext(frames))
        out.append(await anext(frames))
        await frames.aclose()
        return out

    connected, frame, heartbeat = asyncio.run(_consume())

    assert connected == ": connected\n\n"
    event_line, data_line, *_ = frame.split("\n")
    assert event_line == "event: expenses"
    assert json.loads(data_line.removeprefix("data: ")) == {
        "action": "create",
        "record": {"id": "e1", "amount": "5.00"},
    }
    assert heartbeat == HEARTBEAT
    assert broker.subscriber_count(user_id="u1", collection=EXPENSES) == 0
