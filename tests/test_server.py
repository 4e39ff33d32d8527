"""
Tests for the HTTP and WebSocket endpoints.
"""

import xml.etree.ElementTree as ET
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from server import app as server_app
from server.app import app


class TestIncomingCall:
    """Tests for the TwiML webhook."""

    def test_twiml_connects_stream(self):
        client = TestClient(app, raise_server_exceptions=False)
        response = client.post("/incoming")

        assert response.status_code == 200
        assert "application/xml" in response.headers.get("content-type", "")

        content = response.text
        assert "<Response>" in content
        assert "<Connect>" in content
        assert '<Stream url="wss://test.ngrok.io/connection" />' in content

    def test_twiml_is_valid_xml(self):
        client = TestClient(app, raise_server_exceptions=False)
        response = client.post("/incoming")

        root = ET.fromstring(response.text)
        assert root.tag == "Response"
        assert root.find("./Connect/Stream").get("url") == "wss://test.ngrok.io/connection"


class TestHealthAndMetrics:

    def test_health_returns_ok(self):
        client = TestClient(app, raise_server_exceptions=False)
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert "timestamp" in data
        assert data["active_calls"] == 0

    def test_metrics_returns_json(self):
        client = TestClient(app, raise_server_exceptions=False)
        response = client.get("/metrics")

        assert response.status_code == 200
        data = response.json()
        for key in ("uptime_seconds", "total_connections", "active_connections",
                    "total_calls", "active_calls", "interruptions", "errors"):
            assert key in data


class TestConnection:

    @pytest.fixture
    def fake_session(self):
        session = MagicMock()
        session.stop = AsyncMock()
        session.metrics.interruptions = 2
        return session

    def test_messages_reach_the_session(self, fake_session):
        async def create_session(send_message, registry=None):
            # Echo every message back so the test can observe handling.
            fake_session.handle_message = AsyncMock(side_effect=send_message)
            return fake_session

        with patch.object(server_app, "create_session", side_effect=create_session):
            with TestClient(app) as client:
                with client.websocket_connect("/connection") as ws:
                    ws.send_text('{"event": "connected"}')
                    assert ws.receive_text() == '{"event": "connected"}'
                    assert len(server_app.sessions) == 1

        fake_session.stop.assert_awaited()
        assert len(server_app.sessions) == 0

    def test_bad_message_does_not_end_the_call(self, fake_session):
        async def handle_message(message):
            if message == "boom":
                raise RuntimeError("bad frame")
            await captured["send"](message)

        captured = {}

        async def create_session(send_message, registry=None):
            captured["send"] = send_message
            fake_session.handle_message = AsyncMock(side_effect=handle_message)
            return fake_session

        errors_before = server_app.metrics.errors
        with patch.object(server_app, "create_session", side_effect=create_session):
            with TestClient(app) as client:
                with client.websocket_connect("/connection") as ws:
                    ws.send_text("boom")
                    ws.send_text("still here")
                    assert ws.receive_text() == "still here"

        assert server_app.metrics.errors == errors_before + 1
