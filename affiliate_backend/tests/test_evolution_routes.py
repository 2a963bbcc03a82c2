from __future__ import annotations

import base64
import json

import httpx
import jwt
import pytest
from fastapi.testclient import TestClient

from affiliate_backend.connection.records import INSTANCE_COLUMN, INSTANCES_TABLE, KIWIFY_TABLE, REVIEW_TABLE, SYSTEM_CONFIG_TABLE
from affiliate_backend.routes import evolution_routes
from affiliate_backend.server import app
from affiliate_backend.utils.auth_helpers import create_token
from affiliate_backend.whatsapp.container import EvolutionContainer
from affiliate_backend.whatsapp.retry import ProviderRetry, RetryPolicy

from .conftest import FakeSupabase, kiwify_row

PNG_BYTES = b"\x89PNG\r\n\x1a\nqr"
PNG_DATA_URL = "data:image/png;base64," + base64.b64encode(PNG_BYTES).decode()


class _Provider:
    """Scriptable Evolution API behind ``httpx.MockTransport``."""

    def __init__(self):
        self.requests = []
        self.instances = []
        self.status_overrides = {}

    def __call__(self, request):
        self.requests.append((request.method, request.url.path))
        path = request.url.path
        for prefix, status in self.status_overrides.items():
            if path.startswith(prefix):
                return httpx.Response(status, text="error")
        if path == "/instance/fetchInstances":
            return httpx.Response(200, json=self.instances)
        if path == "/instance/create":
            return httpx.Response(201, json={"qrcode": {"base64": PNG_DATA_URL}})
        if path.startswith("/instance/connect/"):
            return httpx.Response(200, json={"base64": PNG_DATA_URL})
        if path.startswith("/instance/connectionState/"):
            return httpx.Response(200, json={"instance": {"state": "open"}})
        return httpx.Response(200, json={"status": "SUCCESS"})


@pytest.fixture
def provider():
    return _Provider()


@pytest.fixture
def db():
    return FakeSupabase({KIWIFY_TABLE: [kiwify_row("u1", "shop1"), kiwify_row("u2", "shop2"), kiwify_row("u3", None)]})


@pytest.fixture
def client(evolution_env, db, provider):
    container = EvolutionContainer.build(db, transport=httpx.MockTransport(provider))
    container.retry = ProviderRetry(obs=container.obs, policy=RetryPolicy(initial_delay_s=0.0, jitter_s=0.0))
    app.dependency_overrides[evolution_routes.get_container] = lambda: container
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def _auth(user_id="u1", **claims):
    if claims:
        token = jwt.encode({"sub": user_id, **claims}, "test-jwt-secret", algorithm="HS256")
    else:
        token = create_token(user_id)
    return {"Authorization": f"Bearer {token}"}


def test_health(client) -> None:
    assert client.get("/health").json()["status"] == "healthy"
    assert client.get("/api/health").status_code == 200


def test_protected_routes_require_token(client) -> None:
    assert client.post("/api/evolution/sync").status_code == 401
    assert client.get("/api/evolution/connection").status_code == 401
    bad = client.get("/api/evolution/connection", headers={"Authorization": "Bearer nope"})
    assert bad.status_code == 401
    assert bad.json()["detail"] == "Token inválido"


def test_webhook_unknown_instance_returns_200_without_writes(client, db) -> None:
    db.tables[KIWIFY_TABLE] = [kiwify_row("u1", "shop1")]

    resp = client.post(
        "/api/evolution/webhook",
        json={"event": "CONNECTION_UPDATE", "instance": {"instanceName": "unknown123", "status": "open"}},
    )

    assert resp.status_code == 200
    assert resp.json() == {"success": True, "event": "CONNECTION_UPDATE", "instance": "unknown123", "action": "unresolved"}
    assert db.writes == []


def test_webhook_malformed_json_is_400(client) -> None:
    resp = client.post("/api/evolution/webhook", content=b"{not json", headers={"content-type": "application/json"})
    assert resp.status_code == 400


def test_webhook_database_failure_is_500(client, db) -> None:
    def fail_write(*_args):
        raise Exception("db down")

    db.fail_write = fail_write
    resp = client.post(
        "/api/evolution/webhook",
        json={"event": "CONNECTION_UPDATE", "instance": {"instanceName": "shop1", "status": "open"}},
    )

    assert resp.status_code == 500
    assert resp.json()["success"] is False


def test_manual_sync_reports_counts(client, db, provider) -> None:
    provider.instances = [{"name": "shop1", "connectionStatus": "open", "ownerJid": "5511999999999@s.whatsapp.net"}]

    resp = client.post("/api/evolution/sync", json={"source": "dashboard"}, headers=_auth())

    body = resp.json()
    assert resp.status_code == 200
    assert body["success"] is True
    assert body["message"] == "Sincronizadas 1 de 1 instâncias"
    assert body["result"]["source"] == "dashboard"
    assert db.row(KIWIFY_TABLE, user_id="u1")["is_connected"] is True

    status = client.get("/api/evolution/sync/status", headers=_auth()).json()
    assert status["lastSync"]["result"]["synced_count"] == 1
    assert status["lastSyncError"] is None


def test_manual_sync_provider_failure_is_500_and_recorded(client, db, provider) -> None:
    provider.status_overrides["/instance/fetchInstances"] = 502

    resp = client.post("/api/evolution/sync", headers=_auth())

    assert resp.status_code == 500
    assert resp.json()["success"] is False
    assert "timestamp" in resp.json()
    assert json.loads(db.row(SYSTEM_CONFIG_TABLE, key="last_sync_error")["value"])["error"]


def test_create_instance_returns_png_and_binds_tenant(client, db, provider) -> None:
    resp = client.post("/api/evolution/instances", json={"instance_name": "newshop"}, headers=_auth("u3"))

    assert resp.status_code == 200
    assert resp.headers["content-type"] == "image/png"
    assert resp.content == PNG_BYTES
    assert db.row(KIWIFY_TABLE, user_id="u3")[INSTANCE_COLUMN] == "newshop"
    assert ("POST", "/instance/create") in provider.requests


def test_create_instance_with_invalid_name_is_400(client, provider) -> None:
    resp = client.post("/api/evolution/instances", json={"instance_name": "bad name!"}, headers=_auth("u3"))

    assert resp.status_code == 400
    assert provider.requests == []


def test_qrcode_and_state_routes(client, provider) -> None:
    qr = client.get("/api/evolution/instances/shop1/qrcode", headers=_auth())
    state = client.get("/api/evolution/instances/shop1/state", headers=_auth())

    assert qr.status_code == 200 and qr.content == PNG_BYTES
    assert state.json() == {"instance": "shop1", "state": "open", "connected": True}


def test_instance_of_another_tenant_is_forbidden(client, provider) -> None:
    resp = client.get("/api/evolution/instances/shop2/state", headers=_auth("u1"))
    assert resp.status_code == 403
    assert provider.requests == []


def test_qrcode_for_unknown_instance_is_404(client, provider) -> None:
    provider.status_overrides["/instance/connect/"] = 404
    resp = client.get("/api/evolution/instances/ghost/qrcode", headers=_auth())
    assert resp.status_code == 404


def test_mark_connected_updates_row_and_history(client, db) -> None:
    resp = client.post(
        "/api/evolution/mark-connected",
        json={"instance_name": "shop1", "phone_number": "5511999999999"},
        headers=_auth("u1"),
    )

    row = db.row(KIWIFY_TABLE, user_id="u1")
    assert resp.status_code == 200
    assert resp.json()["connection"]["isConnected"] is True
    assert row["is_connected"] is True and row["connected_at"] and row["disconnected_at"] is None
    assert row["remojid"] == "5511999999999"
    assert db.row(INSTANCES_TABLE, user_id="u1", instance_name="shop1")["is_connected"] is True
    assert len(db.writes_to(KIWIFY_TABLE, "update")) == 1


def test_mark_connected_for_other_user_requires_service_token(client, db) -> None:
    denied = client.post(
        "/api/evolution/mark-connected",
        json={"instance_name": "shop2", "user_id": "u2"},
        headers=_auth("u1"),
    )
    allowed = client.post(
        "/api/evolution/mark-connected",
        json={"instance_name": "shop2", "user_id": "u2"},
        headers=_auth("scheduler", role="service_role"),
    )

    assert denied.status_code == 403
    assert allowed.status_code == 200
    assert db.row(KIWIFY_TABLE, user_id="u2")["is_connected"] is True


def test_logout_delete_is_best_effort_and_clears_row(client, db, provider) -> None:
    db.row(KIWIFY_TABLE, user_id="u1").update({"is_connected": True, "connected_at": "2026-01-01T00:00:00+00:00"})
    provider.status_overrides["/instance/logout/"] = 500

    resp = client.post("/api/evolution/logout-delete", json={}, headers=_auth("u1"))

    body = resp.json()
    row = db.row(KIWIFY_TABLE, user_id="u1")
    assert resp.status_code == 200
    assert body["success"] is True
    assert body["logout"]["ok"] is False
    assert body["delete"]["ok"] is True
    assert row[INSTANCE_COLUMN] is None
    assert row["is_connected"] is False
    assert row["connected_at"] is None and row["disconnected_at"]
    assert provider.requests == [("DELETE", "/instance/logout/shop1"), ("DELETE", "/instance/delete/shop1")]


def test_connection_lookup(client, db) -> None:
    db.row(KIWIFY_TABLE, user_id="u1").update({"is_connected": True, "remojid": "5511", "connected_at": "t"})

    connected = client.get("/api/evolution/connection", headers=_auth("u1")).json()
    none = client.get("/api/evolution/connection", headers=_auth("u2")).json()

    assert connected["connectedInstance"]["instance_name"] == "shop1"
    assert connected["connectedInstance"]["phone_number"] == "5511"
    assert none == {"connectedInstance": None}


def test_review_queue_is_admin_only(client, db) -> None:
    db.tables[REVIEW_TABLE] = [{"instance_name": "x", "status": "pending", "created_at": "t"}]

    assert client.get("/api/evolution/review-queue", headers=_auth("u1")).status_code == 403
    resp = client.get("/api/evolution/review-queue", headers=_auth("admin", app_metadata={"role": "admin"}))
    assert resp.status_code == 200
    assert resp.json()["count"] == 1


def test_sync_status_without_supabase_is_503(client, db, monkeypatch) -> None:
    def not_configured(_name):
        raise RuntimeError("Supabase não configurado (SUPABASE_URL / SUPABASE_SERVICE_ROLE_KEY).")

    monkeypatch.setattr(db, "table", not_configured)
    resp = client.get("/api/evolution/sync/status", headers=_auth())

    assert resp.status_code == 503
    assert resp.json()["detail"] == "Supabase não configurado."


def test_webhook_connection_update_applies_open_status(client, db) -> None:
    resp = client.post(
        "/api/evolution/webhook",
        json={"event": "connection.update", "instance": "shop1", "data": {"state": "open"}},
    )

    assert resp.status_code == 200
    assert resp.json()["action"] == "applied"
    assert db.row(KIWIFY_TABLE, user_id="u1")["is_connected"] is True


def test_webhook_qrcode_updated_is_acknowledged(client, db) -> None:
    resp = client.post(
        "/api/evolution/webhook",
        json={"event": "QRCODE_UPDATED", "instance": {"instanceName": "shop1"}},
    )

    assert resp.status_code == 200
    assert resp.json()["action"] == "ignored"
    assert db.writes == []


def test_webhook_secret_is_enforced_when_configured(client, db, monkeypatch) -> None:
    monkeypatch.setenv("EVOLUTION_WEBHOOK_SECRET", "hook-secret")
    event = {"event": "CONNECTION_UPDATE", "instance": {"instanceName": "shop1", "status": "open"}}

    missing = client.post("/api/evolution/webhook", json=event)
    wrong = client.post("/api/evolution/webhook", json=event, headers={"x-webhook-secret": "nope"})
    by_header = client.post("/api/evolution/webhook", json=event, headers={"x-webhook-secret": "hook-secret"})
    by_query = client.post("/api/evolution/webhook?secret=hook-secret", json=event)

    assert missing.status_code == 401
    assert wrong.status_code == 401
    assert by_header.status_code == 200
    assert by_query.status_code == 200
    assert db.row(KIWIFY_TABLE, user_id="u1")["is_connected"] is True


def test_create_instance_registers_webhook_with_secret(client, monkeypatch) -> None:
    monkeypatch.setenv("EVOLUTION_WEBHOOK_SECRET", "hook-secret")
    bodies = []

    def capture(request):
        bodies.append(json.loads(request.content))
        return httpx.Response(201, json={"qrcode": {"base64": PNG_DATA_URL}})

    container = app.dependency_overrides[evolution_routes.get_container]()
    container.transport = httpx.MockTransport(capture)

    resp = client.post("/api/evolution/instances", json={"instance_name": "newshop"}, headers=_auth("u3"))

    assert resp.status_code == 200
    assert "secret=hook-secret" in json.dumps(bodies[0])


def test_create_instance_for_unknown_user_is_404(client, provider) -> None:
    resp = client.post("/api/evolution/instances", json={"instance_name": "newshop"}, headers=_auth("ghost"))

    assert resp.status_code == 404
    assert provider.requests == []


def test_logout_delete_honours_cleanup_flag(client, db, provider) -> None:
    db.row(KIWIFY_TABLE, user_id="u1").update({"is_connected": True, "remojid": "5511", "evolution_profile_name": "Loja"})
    db.tables[SYSTEM_CONFIG_TABLE] = [{"key": "evolution_auto_cleanup_on_disconnect", "value": "false"}]

    resp = client.post("/api/evolution/logout-delete", json={}, headers=_auth("u1"))

    row = db.row(KIWIFY_TABLE, user_id="u1")
    assert resp.status_code == 200
    assert row[INSTANCE_COLUMN] is None
    assert row["is_connected"] is False
    assert row["remojid"] == "5511"
    assert row["evolution_profile_name"] == "Loja"


def test_sync_status_reports_tenant_counts(client, db) -> None:
    db.row(KIWIFY_TABLE, user_id="u1").update({"is_connected": True, "evolution_last_sync": "2026-01-01T00:00:00+00:00"})
    db.row(KIWIFY_TABLE, user_id="u2").update({"evolution_last_sync": "2026-01-01T00:00:00+00:00"})

    body = client.get("/api/evolution/sync/status", headers=_auth()).json()

    assert body["totalUsers"] == 3
    assert body["connectedInstances"] == 1
    assert body["totalSynced"] == 2


def test_diagnostics_combines_provider_and_database(client, db) -> None:
    db.row(KIWIFY_TABLE, user_id="u1").update({"is_connected": False})
    db.tables[INSTANCES_TABLE] = [{"user_id": "u1", "instance_name": "shop1", "is_connected": True, "connected_at": "t"}]

    body = client.get("/api/evolution/instances/shop1/diagnostics", headers=_auth("u1")).json()

    assert body["instanceName"] == "shop1"
    assert body["provider"] == {"available": True, "state": "open", "connected": True, "error": None}
    assert body["database"]["userId"] == "u1"
    assert body["database"]["record"]["isConnected"] is False
    assert body["database"]["history"]["is_connected"] is True
    assert body["checkTime"]


def test_diagnostics_degrades_when_provider_is_down(client, provider) -> None:
    provider.status_overrides["/instance/connectionState/"] = 503

    resp = client.get("/api/evolution/instances/shop1/diagnostics", headers=_auth("u1"))

    body = resp.json()
    assert resp.status_code == 200
    assert body["provider"]["available"] is False
    assert body["provider"]["error"]
    assert body["database"]["record"]["instanceName"] == "shop1"


def test_diagnostics_reports_missing_provider_instance(client, provider) -> None:
    provider.status_overrides["/instance/connectionState/"] = 404

    body = client.get("/api/evolution/instances/shop1/diagnostics", headers=_auth("u1")).json()

    assert body["provider"]["available"] is True
    assert body["provider"]["state"] is None
    assert body["provider"]["error"]


def test_diagnostics_of_another_tenant_needs_admin(client) -> None:
    denied = client.get("/api/evolution/instances/shop2/diagnostics", headers=_auth("u1"))
    allowed = client.get(
        "/api/evolution/instances/shop2/diagnostics",
        headers=_auth("admin", app_metadata={"role": "admin"}),
    )

    assert denied.status_code == 403
    assert allowed.status_code == 200
    assert allowed.json()["database"]["userId"] == "u2"
