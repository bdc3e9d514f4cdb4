"""Tests for the HTTP API."""

import pytest
from fastapi.testclient import TestClient

from api.main import app, get_document_store, get_metrics, get_relay
from modelflow.config import get_models
from modelflow.metrics import MetricsCollector
from modelflow.relay import MockRelay, RelayError
from modelflow.storage import InMemoryDocumentStore


ADMIN = "admin@example.com"
ADMIN_HEADERS = {"X-User-Email": ADMIN}
API_KEY = "test-key"


@pytest.fixture
def relay():
    return MockRelay()


def _make_client(monkeypatch, relay, api_key):
    if api_key:
        monkeypatch.setenv("MODELFLOW_API_KEY", api_key)
    else:
        monkeypatch.delenv("MODELFLOW_API_KEY", raising=False)
    monkeypatch.setenv("MODELFLOW_OWNER_EMAILS", ADMIN)

    store = InMemoryDocumentStore()
    metrics = MetricsCollector(enable_logging=False)
    app.dependency_overrides[get_document_store] = lambda: store
    app.dependency_overrides[get_relay] = lambda: relay
    app.dependency_overrides[get_metrics] = lambda: metrics
    return TestClient(app, headers={"X-API-Key": api_key} if api_key else None)


@pytest.fixture
def client(monkeypatch, relay):
    try:
        yield _make_client(monkeypatch, relay, API_KEY)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def open_client(monkeypatch, relay):
    """Client of a server running without an API key."""
    try:
        yield _make_client(monkeypatch, relay, None)
    finally:
        app.dependency_overrides.clear()


def _submit(client, user_id="user_1", plan_id="pro", **extra):
    response = client.post("/requests", json={"user_id": user_id, "requested_plan_id": plan_id, **extra})
    assert response.status_code == 201
    return response.json()


class TestHealthAndPlans:
    """Test public endpoints."""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_plans(self, client):
        plans = client.get("/plans").json()
        assert [p["id"] for p in plans] == ["free", "pro", "max", "owner"]
        assert plans[3]["chats_per_day"] is None


class TestAuth:
    """Test API key and administrator checks."""

    def test_api_key_required_when_configured(self, client, monkeypatch):
        monkeypatch.setenv("MODELFLOW_API_KEY", "secret")

        assert client.get("/usage/user_1").status_code == 401
        assert client.get("/usage/user_1", headers={"X-API-Key": "secret"}).status_code == 200

    def test_admin_routes_need_owner(self, client):
        assert client.get("/admin/requests").status_code == 403
        assert client.get("/admin/requests", headers={"X-User-Email": "u@example.com"}).status_code == 403
        assert client.get("/admin/requests", headers=ADMIN_HEADERS).status_code == 200

    def test_admin_routes_closed_without_api_key(self, open_client):
        """Without an API key the identity header is not trusted."""
        request = _submit(open_client, plan_id="max")

        response = open_client.post(f"/admin/requests/{request['id']}/approve", headers=ADMIN_HEADERS)

        assert response.status_code == 403
        assert open_client.get("/admin/requests", headers=ADMIN_HEADERS).status_code == 403
        assert open_client.get("/users/user_1/requests").json()[0]["status"] == "pending"

    def test_client_email_ignored_without_api_key(self, open_client):
        """An owner email from an unauthenticated caller grants nothing."""
        body = open_client.post("/entitlements/evaluate", json={"user_id": "u", "email": ADMIN}).json()
        quota = open_client.get("/usage/u", params={"email": ADMIN}).json()["quota"]

        assert body["plan_id"] == "free"
        assert body["is_advanced_model"] is False
        assert quota["plan_id"] == "free"
        assert quota["chats_limit"] == 2


class TestChatRelay:
    """Test the relay endpoint."""

    def test_chat(self, client, relay):
        models = get_models()
        response = client.post("/api/chat", json={
            "message": "hello",
            "history": [{"role": "user", "content": "before"}],
            "model": models["advanced"],
        })

        assert response.status_code == 200
        assert response.json()["model"] == models["advanced"]
        assert relay.calls[0]["history"] == [{"role": "user", "content": "before"}]

    def test_unknown_model_uses_standard(self, client):
        response = client.post("/api/chat", json={"message": "hello", "model": "made/up"})
        assert response.json()["model"] == get_models()["standard"]

    def test_empty_message_rejected(self, client):
        assert client.post("/api/chat", json={"message": ""}).status_code == 422

    def test_relay_error(self, client, relay):
        relay.replies = [RelayError("upstream down")]
        response = client.post("/api/chat", json={"message": "hello"})

        assert response.status_code == 502
        assert response.json() == {"error": "upstream down"}

    def test_relay_timeout(self, client, relay):
        relay.replies = [RelayError("Request timeout", timed_out=True)]
        assert client.post("/api/chat", json={"message": "hello"}).status_code == 504


class TestUsageAndEntitlements:
    """Test usage counters and evaluation over HTTP."""

    def test_usage_flow(self, client):
        client.post("/usage/user_1/chats")
        client.post("/usage/user_1/responses", json={"was_advanced_model": False})

        body = client.get("/usage/user_1").json()

        assert body["usage"]["chats_started_today"] == 1
        assert body["usage"]["responses_in_current_chat"] == 1
        assert body["quota"]["plan_id"] == "free"
        assert body["quota"]["responses_remaining"] == 4

    def test_evaluate_denied(self, client):
        client.post("/usage/user_1/chats")
        client.post("/usage/user_1/chats")

        body = client.post("/entitlements/evaluate", json={"user_id": "user_1", "is_new_chat": True}).json()

        assert body["allowed"] is False
        assert body["kind"] == "daily_chat_limit"
        assert body["limit_value"] == 2

    def test_chat_start_over_daily_limit(self, client):
        """Starting a chat past the daily limit is rejected and not counted."""
        client.post("/usage/user_1/chats")
        client.post("/usage/user_1/chats")

        response = client.post("/usage/user_1/chats")

        assert response.status_code == 429
        assert response.json()["kind"] == "daily_chat_limit"
        assert response.json()["limit_value"] == 2
        assert client.get("/usage/user_1").json()["usage"]["chats_started_today"] == 2

    def test_owner_chat_start_not_counted(self, client):
        body = client.post("/usage/o/chats", params={"email": ADMIN}).json()
        assert body["chats_started_today"] == 0

    def test_evaluate_owner(self, client):
        body = client.post("/entitlements/evaluate", json={"user_id": "o", "email": ADMIN}).json()

        assert body["allowed"] is True
        assert body["plan_id"] == "owner"
        assert body["is_advanced_model"] is True


class TestUpgradeRequests:
    """Test the upgrade workflow over HTTP."""

    def test_submit_and_list(self, client):
        request = _submit(client, reason="Need more")

        assert request["status"] == "pending"
        mine = client.get("/users/user_1/requests").json()
        assert [r["id"] for r in mine] == [request["id"]]

        pending = client.get("/admin/requests", headers=ADMIN_HEADERS).json()
        assert [r["id"] for r in pending] == [request["id"]]

    def test_submit_not_requestable(self, client):
        response = client.post("/requests", json={"user_id": "user_1", "requested_plan_id": "owner"})
        assert response.status_code == 400

    def test_approve_with_override(self, client):
        request = _submit(client, plan_id="max")

        response = client.post(
            f"/admin/requests/{request['id']}/approve",
            json={"override_limits": {"chats_per_day": 7}},
            headers=ADMIN_HEADERS,
        )

        assert response.status_code == 200
        assert response.json()["status"] == "approved"
        assert response.json()["resolved_by"] == ADMIN

        quota = client.get("/usage/user_1").json()["quota"]
        assert quota["plan_id"] == "max"
        assert quota["chats_limit"] == 7

    def test_approve_without_body(self, client):
        request = _submit(client)
        response = client.post(f"/admin/requests/{request['id']}/approve", headers=ADMIN_HEADERS)
        assert response.status_code == 200

    def test_resolve_twice_conflicts(self, client):
        request = _submit(client)
        client.post(f"/admin/requests/{request['id']}/deny", json={"reason": "no"}, headers=ADMIN_HEADERS)

        response = client.post(f"/admin/requests/{request['id']}/approve", headers=ADMIN_HEADERS)

        assert response.status_code == 409
        assert response.json()["status"] == "denied"

    def test_unknown_request(self, client):
        response = client.post("/admin/requests/req_missing/approve", headers=ADMIN_HEADERS)
        assert response.status_code == 404

    def test_status_filter(self, client):
        request = _submit(client)
        _submit(client, user_id="user_2")
        client.post(f"/admin/requests/{request['id']}/approve", headers=ADMIN_HEADERS)

        approved = client.get("/admin/requests?status=approved", headers=ADMIN_HEADERS).json()
        everything = client.get("/admin/requests?status=all", headers=ADMIN_HEADERS).json()

        assert [r["id"] for r in approved] == [request["id"]]
        assert len(everything) == 2
        assert client.get("/admin/requests?status=bogus", headers=ADMIN_HEADERS).status_code == 400

    def test_revoke_and_stats(self, client):
        request = _submit(client)
        client.post(f"/admin/requests/{request['id']}/approve", headers=ADMIN_HEADERS)

        revoked = client.post("/admin/users/user_1/revoke", headers=ADMIN_HEADERS).json()
        stats = client.get("/admin/stats", headers=ADMIN_HEADERS).json()

        assert revoked["plan_id"] == "free"
        assert stats["requests"]["revoked"] == 1
        assert stats["requests"]["total"] == 1
        assert "counters" in stats["metrics"]
