from __future__ import annotations

import pytest
from conftest import fake_extraction, make_pdf
from fastapi.testclient import TestClient

from spend_stream.main import create_app
from spend_stream.worker.celery_app import celery_app


@pytest.fixture
def client():
    with TestClient(create_app()) as test_client:
        yield test_client


def _auth(client: TestClient, email: str = "api@spendstream.io") -> dict[str, str]:
    r = client.post(
        "/api/auth/register",
        json={"email": email, "password": "password123", "full_name": "Api User"},
    )
    assert r.status_code == 201, r.text
    r = client.post("/api/auth/token", data={"username": email, "password": "password123"})
    assert r.status_code == 200, r.text
    return {"Authorization": f"Bearer {r.json()['access_token']}"}


def test_healthz(client):
    assert client.get("/healthz").json() == {"status": "ok"}
    r = client.get("/healthz/storage")
    assert r.status_code == 200
    assert r.json()["ok"] is True


def test_register_login_and_me(client):
    headers = _auth(client)
    me = client.get("/api/auth/me", headers=headers)
    assert me.status_code == 200
    assert me.json()["email"] == "api@spendstream.io"

    dup = client.post(
        "/api/auth/register", json={"email": "api@spendstream.io", "password": "password123"}
    )
    assert dup.status_code == 409

    bad = client.post(
        "/api/auth/token", data={"username": "api@spendstream.io", "password": "wrong-pass"}
    )
    assert bad.status_code == 401


def test_endpoints_require_a_token(client):
    assert client.get("/api/expenses").status_code == 401
    assert client.get("/api/categories").status_code == 401
    r = client.get("/api/expenses", headers={"Authorization": "Bearer not-a-token"})
    assert r.status_code == 401


def test_category_crud(client):
    headers = _auth(client)
    names = [c["name"] for c in client.get("/api/categories", headers=headers).json()]
    assert "Other" in names and "Travel" in names

    r = client.post("/api/categories", headers=headers, json={"name": "Pets"})
    assert r.status_code == 201
    pets_id = r.json()["id"]

    assert client.post("/api/categories", headers=headers, json={"name": "pets"}).status_code == 409

    r = client.patch(f"/api/categories/{pets_id}", headers=headers, json={"name": "Pet Care"})
    assert r.status_code == 200
    assert r.json()["name"] == "Pet Care"

    r = client.get(f"/api/categories/{pets_id}/expense-count", headers=headers)
    assert r.json()["expense_count"] == 0

    r = client.delete(f"/api/categories/{pets_id}", headers=headers)
    assert r.status_code == 200
    assert r.json()["deleted"] is True
    names = [c["name"] for c in client.get("/api/categories", headers=headers).json()]
    assert "Pet Care" not in names


def test_upload_ingests_statement(client, monkeypatch):
    monkeypatch.setattr(celery_app.conf, "task_always_eager", True)
    calls = fake_extraction(
        monkeypatch,
        [
            {
                "date": "2024-03-01",
                "description": "Coffee",
                "merchant": "Starbucks",
                "category": "Dining",
                "original_amount": 5.5,
                "original_currency": "SGD",
            },
            {
                "date": "2024-03-02",
                "description": "Bus fare",
                "merchant": "SBS Transit",
                "category": "Transportation",
                "original_amount": "1.80",
                "original_currency": "SGD",
            },
        ],
    )
    headers = _auth(client)
    pdf = make_pdf(2)

    r = client.post(
        "/api/statements",
        headers=headers,
        files={"upload": ("march.pdf", pdf, "application/pdf")},
    )
    assert r.status_code == 202, r.text
    body = r.json()
    assert body["message"] == "'march.pdf' is being processed."
    assert body["status"] == "processing"
    assert len(calls) == 1

    statement = client.get(f"/api/statements/{body['statement_id']}", headers=headers).json()
    assert statement["status"] == "completed"
    assert statement["expense_count"] == 2
    assert statement["metadata_json"]["page_count"] == 2

    listed = client.get("/api/statements", headers=headers, params={"ids": body["statement_id"]})
    assert [s["id"] for s in listed.json()] == [body["statement_id"]]

    expenses = client.get("/api/expenses", headers=headers).json()
    assert [e["description"] for e in expenses] == ["Bus fare", "Coffee"]

    again = client.post(
        "/api/statements",
        headers=headers,
        files={"upload": ("march-copy.pdf", pdf, "application/pdf")},
    )
    assert again.status_code == 409
    assert again.json()["detail"] == "Duplicate: 'march-copy.pdf' has already been uploaded."


def test_upload_with_failed_extraction_still_accepts(client, monkeypatch):
    monkeypatch.setattr(celery_app.conf, "task_always_eager", True)
    fake_extraction(monkeypatch, [])
    headers = _auth(client)

    r = client.post(
        "/api/statements",
        headers=headers,
        files={"upload": ("empty.pdf", make_pdf(1, marker="empty"), "application/pdf")},
    )
    assert r.status_code == 202

    statement = client.get(f"/api/statements/{r.json()['statement_id']}", headers=headers).json()
    assert statement["status"] == "failed"
    assert statement["error_message"]


def test_upload_rejects_non_pdf(client):
    headers = _auth(client)
    r = client.post(
        "/api/statements",
        headers=headers,
        files={"upload": ("notes.txt", b"hello", "text/plain")},
    )
    assert r.status_code in (400, 415)


def _seed_expenses(client, headers, monkeypatch):
    monkeypatch.setattr(celery_app.conf, "task_always_eager", True)
    fake_extraction(
        monkeypatch,
        [
            {
                "date": "2024-01-10",
                "description": "Flat white",
                "merchant": "Starbucks",
                "category": "Dining",
                "original_amount": "6.00",
                "original_currency": "SGD",
            },
            {
                "date": "2024-02-11",
                "description": "Cold brew",
                "merchant": "Starbucks",
                "category": "Dining",
                "original_amount": "7.00",
                "original_currency": "SGD",
            },
            {
                "date": "2024-02-12",
                "description": "Weekly shop",
                "merchant": "FairPrice",
                "category": "Groceries",
                "original_amount": "80.00",
                "original_currency": "SGD",
            },
        ],
    )
    r = client.post(
        "/api/statements",
        headers=headers,
        files={"upload": ("q1.pdf", make_pdf(1, marker="q1"), "application/pdf")},
    )
    assert r.status_code == 202
    return {e["description"]: e for e in client.get("/api/expenses", headers=headers).json()}


def test_expense_filters_and_edits(client, monkeypatch):
    headers = _auth(client)
    by_description = _seed_expenses(client, headers, monkeypatch)

    r = client.get(
        "/api/expenses",
        headers=headers,
        params={"merchant": ["Starbucks"], "sort_by": "amount", "sort_dir": "asc"},
    )
    assert [e["description"] for e in r.json()] == ["Flat white", "Cold brew"]

    r = client.get("/api/expenses", headers=headers, params={"category": ["Groceries"]})
    assert [e["description"] for e in r.json()] == ["Weekly shop"]

    r = client.get("/api/expenses", headers=headers, params={"search": "brew"})
    assert [e["description"] for e in r.json()] == ["Cold brew"]

    r = client.get("/api/expenses", headers=headers, params={"sort_by": "colour"})
    assert r.status_code == 422

    flat_white = by_description["Flat white"]["id"]
    r = client.patch(
        f"/api/expenses/{flat_white}",
        headers=headers,
        params={"apply_to_merchant": "true"},
        json={"category": "Entertainment"},
    )
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["expense"]["category"] == "Entertainment"
    assert body["mapping_created"] is True
    assert body["updated_count"] == 2

    mappings = client.get("/api/merchant-mappings", headers=headers).json()
    assert [(m["merchant_name"], m["category"]) for m in mappings] == [
        ("STARBUCKS", "Entertainment")
    ]

    r = client.patch(f"/api/expenses/{flat_white}", headers=headers, json={"description": "  "})
    assert r.status_code == 400


def test_expense_deletes_and_summaries(client, monkeypatch):
    headers = _auth(client)
    by_description = _seed_expenses(client, headers, monkeypatch)

    monthly = client.get("/api/expenses/summary/monthly", headers=headers).json()
    assert [row["month"] for row in monthly] == ["Jan 2024", "Feb 2024"]
    assert float(monthly[1]["Total"]) == pytest.approx(87.0)
    assert float(monthly[0]["Groceries"]) == 0

    headline = client.get("/api/expenses/summary/headline", headers=headers).json()
    assert headline["month_count"] == 2
    assert float(headline["total"]) == pytest.approx(93.0)
    assert float(headline["average"]) == pytest.approx(46.5)

    r = client.delete(f"/api/expenses/{by_description['Weekly shop']['id']}", headers=headers)
    assert r.status_code == 204

    r = client.post("/api/expenses/bulk-delete", headers=headers, json={"ids": []})
    assert r.status_code == 400
    assert r.json()["detail"] == "No expenses selected for deletion"

    remaining = [by_description["Flat white"]["id"], by_description["Cold brew"]["id"]]
    r = client.post("/api/expenses/bulk-delete", headers=headers, json={"ids": remaining})
    assert r.json() == {"deleted_count": 2}
    assert client.get("/api/expenses", headers=headers).json() == []


def test_merchant_mapping_endpoints(client):
    headers = _auth(client)
    r = client.post(
        "/api/merchant-mappings",
        headers=headers,
        json={"merchant_name": "Grab", "category": "Transportation"},
    )
    assert r.status_code == 201
    assert r.json()["mapping"]["merchant_name"] == "GRAB"

    dup = client.post(
        "/api/merchant-mappings",
        headers=headers,
        json={"merchant_name": "GRAB ", "category": "Dining"},
    )
    assert dup.status_code == 409

    r = client.put("/api/merchant-mappings/grab", headers=headers, json={"category": "Travel"})
    assert r.status_code == 200
    assert r.json()["mapping"]["category"] == "Travel"

    assert client.delete("/api/merchant-mappings/grab", headers=headers).status_code == 204
    assert client.get("/api/merchant-mappings", headers=headers).json() == []


def test_ingestion_prompt_round_trip(client):
    headers = _auth(client)
    assert client.get("/api/ingestion/prompt", headers=headers).json() == {"prompt": ""}

    r = client.put(
        "/api/ingestion/prompt",
        headers=headers,
        json={"prompt": "  Treat GRAB* lines as Transportation.  "},
    )
    assert r.status_code == 200
    saved = client.get("/api/ingestion/prompt", headers=headers).json()["prompt"]
    assert saved == r.json()["prompt"]
    assert "GRAB*" in saved


def test_stream_rejects_unknown_collection(client):
    headers = _auth(client)
    assert client.get("/api/stream/categories", headers=headers).status_code == 422
