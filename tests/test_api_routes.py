"""
tests/test_api_routes.py — FastAPI Route Integration Tests
============================================================

OAuth completion page, webhook intake, status and health, via the
FastAPI TestClient.  The client is not connected (``manage_client=False``).
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from chatgraph.api.main import create_app
from chatgraph.client import ChatClient
from chatgraph.config import ClientConfig, EventsConfig

EVENTS = EventsConfig(app_id="A1", client_id="123.456", client_secret="shh", signing_secret="sign")


@pytest.fixture
def chat(make_transport, api_factory, webhooks):
    return ChatClient(
        ClientConfig(events=EVENTS),
        transport=make_transport({"xoxb-9": ("T9", "UB")}),
        api_factory=api_factory,
        webhooks=webhooks,
    )


@pytest.fixture
def client(chat):
    return TestClient(create_app(chat, manage_client=False), raise_server_exceptions=False)


class TestHealthEndpoint:
    def test_health_returns_ok(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}


class TestOAuthRoute:
    def test_unknown_app_is_404(self, client):
        resp = client.get("/slack/oauth/A-OTHER", params={"code": "c"})
        assert resp.status_code == 404

    def test_failed_exchange_is_403(self, client, api_factory):
        api_factory.api(None).responses["oauth.v2.access"] = {"ok": False, "error": "invalid_code"}
        resp = client.get("/slack/oauth/A1", params={"code": "bad"})
        assert resp.status_code == 403
        assert "Failed to get OAuth token" in resp.text
        assert "invalid_code" in resp.text

    def test_success_page(self, client, api_factory, chat):
        api_factory.api(None).responses["oauth.v2.access"] = {
            "ok": True,
            "app_id": "A1",
            "access_token": "xoxb-9",
            "team": {"id": "T9"},
            "bot_user_id": "UB",
        }
        resp = client.get("/slack/oauth/A1", params={"code": "good"})
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/html")
        assert "Successfully added bot to team" in resp.text
        assert chat.get_team("T9") is not None


class TestEventsRoute:
    def test_forwards_body_and_relays_json(self, client, webhooks):
        webhooks.response = (200, {"challenge": "abc"})
        resp = client.post("/slack/events", content=b'{"type": "url_verification"}',
                           headers={"X-Slack-Signature": "v0=1"})
        assert resp.status_code == 200
        assert resp.json() == {"challenge": "abc"}
        body, headers = webhooks.requests[0]
        assert body == b'{"type": "url_verification"}'
        assert headers["x-slack-signature"] == "v0=1"

    def test_relays_plain_status(self, client, webhooks):
        webhooks.response = (401, "bad signature")
        resp = client.post("/slack/events", content=b"{}")
        assert resp.status_code == 401
        assert resp.text == "bad signature"


class TestStatusRoute:
    def test_lists_known_teams(self, client, chat):
        chat.store.upsert_team({"id": "T1", "name": "Acme"})
        resp = client.get("/slack/status")
        assert resp.status_code == 200
        data = resp.json()
        assert data["webhooks"] is True
        assert data["teams"] == [{
            "id": "T1",
            "name": "Acme",
            "state": "idle",
            "partial": True,
            "users": 0,
            "channels": 0,
        }]
