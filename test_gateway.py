"""Upgrade gate, path routing and the login endpoints."""

import pytest
from fastapi.testclient import TestClient
from starlette.testclient import WebSocketDenialResponse
from starlette.websockets import WebSocketDisconnect

from config import ConfigError
from conftest import PASSWORD, FakeBackend, FakeRunner, make_config
from web import create_app
from web.auth import login_rate, password_matches
from web.gateway import route_matches


@pytest.mark.parametrize("path", ["/shell", "/ws", "/elsewhere"])
def test_unauthenticated_upgrade_is_refused(client, app, backend, path):
    with pytest.raises(WebSocketDenialResponse) as exc:
        with client.websocket_connect(path):
            pass
    assert exc.value.status_code == 401
    assert len(app.state.gateway.registry) == 0
    assert backend.spawned == []


def test_bad_cookie_is_refused(client, app):
    client.cookies.set("session", "forged-value")
    with pytest.raises(WebSocketDenialResponse) as exc:
        with client.websocket_connect("/ws"):
            pass
    assert exc.value.status_code == 401
    assert len(app.state.gateway.registry) == 0


def test_logout_revokes_upgrade(auth_client):
    assert auth_client.post("/api/logout").json() == {"success": True}
    with pytest.raises(WebSocketDenialResponse):
        with auth_client.websocket_connect("/shell"):
            pass


def test_client_config_reports_websocket_url(client, app):
    port = app.state.gateway.config.port
    assert client.get("/api/config").json() == {"serverPort": port, "wsUrl": "ws://testserver"}
    behind_tls = client.get("/api/config", headers={"X-Forwarded-Proto": "https"})
    assert behind_tls.json()["wsUrl"] == "wss://testserver"


def test_unknown_path_is_closed(auth_client, app):
    with auth_client.websocket_connect("/nowhere") as ws:
        with pytest.raises(WebSocketDisconnect) as exc:
            ws.receive_json()
    assert exc.value.code == 1008
    assert len(app.state.gateway.registry) == 0


def test_chat_route_registers_until_close(auth_client, app):
    registry = app.state.gateway.registry
    with auth_client.websocket_connect("/ws") as ws:
        ws.send_json({"type": "ping"})
        assert ws.receive_json()["type"] == "error"
        assert len(registry) == 1
    assert len(registry) == 0


def test_shell_route_is_not_registered(auth_client, app):
    with auth_client.websocket_connect("/shell") as ws:
        ws.send_json({"type": "ping"})
        ws.receive_json()
        assert len(app.state.gateway.registry) == 0


def test_route_prefix_matching():
    assert route_matches("/shell", "/shell")
    assert route_matches("/shell/abc", "/shell")
    assert route_matches("/ws", "/ws/")
    assert not route_matches("/wsx", "/ws")
    assert not route_matches("/", "/ws")


# ── Login ──────────────────────────────────────────────────────

def test_login_flow(client):
    assert client.get("/api/auth/status").json() == {"isAuthenticated": False}
    resp = client.post("/api/login", json={"password": "nope"})
    assert resp.status_code == 401
    assert resp.json()["success"] is False
    resp = client.post("/api/login", json={"password": PASSWORD})
    assert resp.json() == {"success": True}
    assert client.get("/api/auth/status").json() == {"isAuthenticated": True}


def test_login_without_configured_password(tmp_path):
    app = create_app(make_config(tmp_path, app_password=""), backend=FakeBackend(), runner=FakeRunner())
    with TestClient(app) as client:
        resp = client.post("/api/login", json={"password": "anything"})
    assert resp.status_code == 500


def test_login_rate_limited(tmp_path):
    app = create_app(make_config(tmp_path, login_max_attempts=2), backend=FakeBackend(), runner=FakeRunner())
    with TestClient(app) as client:
        assert client.post("/api/login", json={"password": "a"}).status_code == 401
        assert client.post("/api/login", json={"password": "b"}).status_code == 401
        assert client.post("/api/login", json={"password": PASSWORD}).status_code == 429


def test_login_limit_is_per_client_address(tmp_path):
    app = create_app(make_config(tmp_path, login_max_attempts=1), backend=FakeBackend(), runner=FakeRunner())
    second = TestClient(app, client=("10.0.0.2", 50000))
    with TestClient(app) as first:
        assert first.post("/api/login", json={"password": "a"}).status_code == 401
        limited = first.post("/api/login", json={"password": PASSWORD})
        assert limited.status_code == 429
        assert limited.json()["success"] is False
        assert second.post("/api/login", json={"password": PASSWORD}).status_code == 200


def test_login_rate_string():
    assert login_rate(10, 900) == "10 per 900 seconds"
    assert login_rate(3, 0.5) == "3 per 1 seconds"


def test_password_matches():
    assert password_matches("s3cret", "s3cret")
    assert not password_matches("s3cre", "s3cret")
    assert not password_matches("", "s3cret")


# ── Startup ────────────────────────────────────────────────────

@pytest.mark.parametrize("secret", ["", "short", "x" * 31])
def test_weak_session_secret_is_fatal(tmp_path, secret):
    with pytest.raises(ConfigError):
        create_app(make_config(tmp_path, session_secret=secret), backend=FakeBackend(), runner=FakeRunner())
