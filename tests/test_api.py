"""HTTP API tests against the application routers."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from app.db import get_db
from app.main import app


@pytest.fixture()
def client(engine):
    TestingSession = sessionmaker(bind=engine, autoflush=False, autocommit=False)

    def _get_db():
        db = TestingSession()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = _get_db
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create(client: TestClient, account, **overrides) -> dict:
    payload = {
        "account_id": str(account.id),
        "name": "Fiber 100",
        "base_amount": "50.00",
    }
    payload.update(overrides)
    resp = client.post("/api/v1/subscriptions", json=payload, headers={"X-Actor": "api-user"})
    assert resp.status_code == 201, resp.text
    return resp.json()


def _activate(client: TestClient, subscription_id: str) -> dict:
    resp = client.post(f"/api/v1/subscriptions/{subscription_id}/activate")
    assert resp.status_code == 200, resp.text
    return resp.json()


def test_health_and_metrics(client):
    assert client.get("/health").json() == {"status": "ok"}
    resp = client.get("/metrics")
    assert resp.status_code == 200
    assert "http_requests_total" in resp.text


def test_create_and_fetch_subscription(client, account):
    created = _create(client, account, tax_percentage="10")

    assert created["status"] == "pending"
    assert created["total_amount"] == "55.00"
    assert created["next_billing_date"] is not None

    fetched = client.get(f"/api/v1/subscriptions/{created['id']}").json()
    assert fetched["id"] == created["id"]

    events = client.get(f"/api/v1/subscriptions/{created['id']}/events").json()
    assert events["count"] == 1
    assert events["items"][0]["event_type"] == "created"
    assert events["items"][0]["actor"] == "api-user"


def test_unknown_subscription_error_shape(client):
    resp = client.get(
        f"/api/v1/subscriptions/{uuid.uuid4()}", headers={"X-Request-ID": "req-123"}
    )

    assert resp.status_code == 404
    body = resp.json()
    assert body["code"] == "not_found"
    assert body["details"]["entity"] == "Subscription"
    assert body["request_id"] == "req-123"
    assert resp.headers["X-Request-ID"] == "req-123"


def test_invalid_payload_is_validation_failed(client):
    resp = client.post("/api/v1/subscriptions", json={"account_id": "not-a-uuid"})

    assert resp.status_code == 400
    assert resp.json()["code"] == "validation_failed"


def test_unknown_account_is_not_found(client):
    resp = client.post("/api/v1/subscriptions", json={"account_id": str(uuid.uuid4())})
    assert resp.status_code == 404


def test_lifecycle_over_http(client, account):
    created = _create(client, account)
    active = _activate(client, created["id"])
    assert active["status"] == "active"

    paused = client.post(f"/api/v1/subscriptions/{created['id']}/pause", json={})
    assert paused.json()["status"] == "paused"

    resumed = client.post(f"/api/v1/subscriptions/{created['id']}/resume", json={})
    assert resumed.json()["status"] == "active"

    cancelled = client.post(
        f"/api/v1/subscriptions/{created['id']}/cancel",
        json={"cancellation_reason": "customer_request", "immediate_cancel": True},
    )
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "cancelled"

    again = client.post(
        f"/api/v1/subscriptions/{created['id']}/cancel",
        json={"cancellation_reason": "customer_request"},
    )
    assert again.status_code == 409
    assert again.json()["code"] == "not_cancellable"


def test_update_and_delete(client, account):
    created = _create(client, account)

    updated = client.patch(
        f"/api/v1/subscriptions/{created['id']}", json={"base_amount": "80.00"}
    )
    assert updated.status_code == 200
    assert updated.json()["total_amount"] == "80.00"

    assert client.delete(f"/api/v1/subscriptions/{created['id']}").status_code == 204
    assert client.get(f"/api/v1/subscriptions/{created['id']}").status_code == 404


def test_update_rejects_clearing_billing_cycle(client, account):
    created = _create(client, account)

    resp = client.patch(
        f"/api/v1/subscriptions/{created['id']}", json={"billing_cycle": None}
    )

    assert resp.status_code == 400
    assert resp.json()["code"] == "validation_failed"
    current = client.get(f"/api/v1/subscriptions/{created['id']}").json()
    assert current["billing_cycle"] == created["billing_cycle"]


def test_delete_active_conflicts(client, account):
    created = _create(client, account)
    _activate(client, created["id"])

    resp = client.delete(f"/api/v1/subscriptions/{created['id']}")

    assert resp.status_code == 409
    assert resp.json()["code"] == "conflict"


def test_list_and_stats(client, account):
    first = _create(client, account)
    _create(client, account)
    _activate(client, first["id"])

    page = client.get("/api/v1/subscriptions", params={"limit": 1}).json()
    assert page["total"] == 2
    assert page["has_next"] is True

    active = client.get("/api/v1/subscriptions", params={"status": "active"}).json()
    assert [item["id"] for item in active["items"]] == [first["id"]]

    stats = client.get("/api/v1/subscriptions/stats").json()
    assert stats["total"] == 2
    assert stats["by_status"]["active"] == 1


def test_hierarchy_over_http(client, account):
    parent = _create(client, account, name="Parent")
    other = _create(client, account, name="Other")
    child = _create(client, account, name="Child")

    linked = client.post(f"/api/v1/subscriptions/{parent['id']}/children/{child['id']}")
    assert linked.json()["parent_subscription_id"] == parent["id"]

    conflict = client.post(f"/api/v1/subscriptions/{other['id']}/children/{child['id']}")
    assert conflict.status_code == 409

    children = client.get(f"/api/v1/subscriptions/{parent['id']}/children").json()
    assert [c["id"] for c in children] == [child["id"]]

    report = client.get(f"/api/v1/subscriptions/{parent['id']}/hierarchy/validate").json()
    assert report["valid"] is True

    unlinked = client.delete(f"/api/v1/subscriptions/{child['id']}/parent")
    assert unlinked.json()["parent_subscription_id"] is None


def test_products_over_http(client, account, product):
    created = _create(client, account)

    attached = client.post(
        f"/api/v1/subscriptions/{created['id']}/products",
        json=[{"product_id": str(product.id), "quantity": 2}],
    )
    assert attached.status_code == 200
    assert attached.json()["recurring_products_total"] == "20.00"

    detached = client.delete(f"/api/v1/subscriptions/{created['id']}/products/{product.id}")
    assert detached.json()["recurring_products_total"] == "0.00"


def test_invoice_generation_and_maintenance(client, account, monkeypatch):
    monkeypatch.setattr("app.api.billing.get_gateway", lambda: None)
    created = _create(client, account)
    _activate(client, created["id"])
    run_at = (datetime.now(UTC) + timedelta(days=40)).isoformat()

    dry = client.post("/api/v1/invoices/generate", json={"run_at": run_at, "dry_run": True})
    assert dry.json()["invoices_created"] == 0

    summary = client.post("/api/v1/invoices/generate", json={"run_at": run_at}).json()
    assert summary["invoices_created"] == 1

    invoices = client.get(
        "/api/v1/invoices", params={"subscription_id": created["id"]}
    ).json()
    assert invoices["count"] == 1
    invoice = invoices["items"][0]
    assert invoice["status"] == "pending"
    assert invoice["total_amount"] == "50.00"

    no_gateway = client.post(f"/api/v1/invoices/{invoice['id']}/payments")
    assert no_gateway.status_code == 409

    cancelled = client.post(
        f"/api/v1/invoices/{invoice['id']}/cancel", json={"reason": "billing error"}
    )
    assert cancelled.json()["status"] == "cancelled"

    refund = client.post(f"/api/v1/invoices/{invoice['id']}/refund", json={})
    assert refund.status_code == 409
    assert refund.json()["code"] == "invalid_state_transition"


def test_dunning_run_over_http(client, monkeypatch):
    monkeypatch.setattr("app.api.billing.get_gateway", lambda: None)
    resp = client.post("/api/v1/invoices/dunning/advance")
    assert resp.status_code == 200
    assert resp.json()["started"] == 0


def test_review_error_events(client, account):
    created = _create(client, account)
    client.post(f"/api/v1/subscriptions/{created['id']}/resume", json={})

    errors = client.get("/api/v1/events", params={"is_error": True}).json()
    assert errors["count"] == 1
    event_id = errors["items"][0]["id"]

    reviewed = client.post(
        f"/api/v1/events/{event_id}/review", json={"reviewed_by": "auditor"}
    )
    assert reviewed.status_code == 200
    assert reviewed.json()["reviewed_by"] == "auditor"

    again = client.post(f"/api/v1/events/{event_id}/review", json={"reviewed_by": "auditor"})
    assert again.status_code == 409
