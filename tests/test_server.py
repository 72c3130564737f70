"""
Tests for the HTTP and WebSocket surface.
"""

import json
import time
import xml.etree.ElementTree as ET

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect


@pytest.fixture
def client():
    from src.relay.assistants import get_assistant_service
    from server.app import app

    get_assistant_service().refresh()
    return TestClient(app, raise_server_exceptions=False)


class TestTwimlGeneration:
    """Tests for TwiML endpoint."""

    def test_twiml_points_at_conversation_relay(self, client):
        response = client.post("/twiml")

        assert response.status_code == 200
        assert "application/xml" in response.headers.get("content-type", "")
        content = response.text
        assert "<Connect>" in content
        assert "<ConversationRelay" in content
        assert "wss://test.ngrok.io/conversation-relay" in content

    def test_twiml_is_valid_xml(self, client):
        response = client.post("/twiml?assistant=concierge")

        root = ET.fromstring(response.text)
        assert root.tag == "Response"
        relay = root.find("./Connect/ConversationRelay")
        assert relay is not None
        assert relay.find("Language").get("code") == "en-GB"
        assert relay.find("Parameter").get("value") == "concierge"

    def test_twiml_unknown_assistant(self, client):
        response = client.get("/twiml?assistant=nobody")

        assert response.status_code == 404
        assert response.json() == {"message": "Assistant not found"}


class TestHttpEndpoints:
    def test_root(self, client):
        response = client.get("/")

        assert response.status_code == 200
        assert response.text == "WebSocket Server Running"

    def test_health_returns_ok(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert "timestamp" in data

    def test_metrics_returns_json(self, client):
        data = client.get("/metrics").json()

        for key in ("uptime_seconds", "total_connections", "active_connections",
                    "total_sessions", "active_sessions", "rejected_setups", "errors"):
            assert key in data

    def test_assistants_listing(self, client):
        data = client.get("/assistants").json()

        assert {a["assistant_name"] for a in data} == {"default", "concierge"}

    def test_assistant_lookup(self, client):
        assert client.get("/assistant?name=default").json()["language_code"] == "en-US"
        missing = client.get("/assistant?name=nobody")
        assert missing.status_code == 404
        assert missing.json() == {"message": "Assistant not found"}


class TestConversationRelaySocket:
    def test_setup_gets_greeting(self, client, setup_message):
        with client.websocket_connect("/conversation-relay") as ws:
            ws.send_text(setup_message)
            greeting = json.loads(ws.receive_text())

        assert greeting["type"] == "text"
        assert greeting["last"] is True
        assert greeting["token"].startswith("Hi, thanks for calling Owl Bank")

    def test_unknown_assistant_closes_socket(self, client):
        from server.app import metrics

        rejected = metrics.rejected_setups
        setup = {
            "type": "setup",
            "sessionId": "VX9",
            "callSid": "CA9",
            "from": "+15005550006",
            "to": "+61200000002",
            "customParameters": {"assistant": "nobody"},
        }

        with client.websocket_connect("/conversation-relay") as ws:
            ws.send_text(json.dumps(setup))
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_text()

        assert exc_info.value.code == 1008
        assert metrics.rejected_setups == rejected + 1


class RecordingStream:
    """Model stream stand-in that only records caller turns."""

    def __init__(self, call_sid, assistant, *, config):
        self.prompts = []
        self.destroyed = False

    def set_token_callback(self, callback):
        pass

    def set_complete_callback(self, callback):
        pass

    def set_tool_request_callback(self, callback):
        pass

    def add_context(self, text, role="system"):
        pass

    def completion(self, text, interaction_count, role="user", name=None, tool_call_id=None):
        self.prompts.append(text)

    def destroy(self):
        self.destroyed = True


@pytest.fixture
def controllers(monkeypatch):
    """Controllers built by the socket endpoint, wired to RecordingStream."""
    from src.relay import session as session_module

    created = []
    real_controller = session_module.SessionController

    def build(send_message, **kwargs):
        sent = []

        async def recording_send(message):
            sent.append(json.loads(message))
            await send_message(message)

        kwargs["model_stream_factory"] = RecordingStream
        controller = real_controller(recording_send, **kwargs)
        controller.sent = sent
        created.append(controller)
        return controller

    monkeypatch.setattr(session_module, "SessionController", build)
    return created


class TestConversationRelayLifecycle:
    def test_binary_frame_does_not_end_call(self, client, controllers, setup_message):
        with client.websocket_connect("/conversation-relay") as ws:
            ws.send_text(setup_message)
            ws.receive_text()
            stream = controllers[0].runtime.model_stream

            ws.send_bytes(b"\xff\xfe not json")
            ws.send_text(json.dumps({"type": "prompt", "voicePrompt": "What's my balance?"}))
            ws.send_bytes(json.dumps({"type": "prompt", "voicePrompt": "second"}).encode("utf-8"))

        controller = controllers[0]
        assert stream.prompts == ["What's my balance?", "second"]
        assert controller.session.interaction_count == 2
        assert controller.session.close_reason == "connection_closed"

    def test_disconnect_releases_session(self, client, controllers, setup_message, monkeypatch):
        from src.relay.config import get_config
        from server.app import metrics

        monkeypatch.setenv("SILENCE_SECONDS_THRESHOLD", "0.3")
        get_config.cache_clear()
        active_before = metrics.active_sessions

        with client.websocket_connect("/conversation-relay") as ws:
            ws.send_text(setup_message)
            ws.receive_text()
            controller = controllers[0]
            runtime = controller.runtime

        time.sleep(0.6)

        assert controller.state.value == "closed"
        assert controller.session.close_reason == "connection_closed"
        assert controller.runtime is None
        assert runtime.model_stream.destroyed
        assert not runtime.silence.is_monitoring
        assert not runtime.silence.has_pending_timer
        assert [f["type"] for f in controller.sent] == ["text"]
        assert metrics.active_sessions == active_before

    def test_failed_setup_closes_socket(self, client, monkeypatch):
        from src.relay import session as session_module

        real_controller = session_module.SessionController

        def broken_executor(assistant, *, config):
            raise RuntimeError("twilio client unavailable")

        def build(send_message, **kwargs):
            kwargs["model_stream_factory"] = RecordingStream
            kwargs["tool_executor_factory"] = broken_executor
            return real_controller(send_message, **kwargs)

        monkeypatch.setattr(session_module, "SessionController", build)

        setup = {
            "type": "setup",
            "sessionId": "VX8",
            "callSid": "CA8",
            "from": "+15005550006",
            "customParameters": {"assistant": "default"},
        }
        with client.websocket_connect("/conversation-relay") as ws:
            ws.send_text(json.dumps(setup))
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_text()

        assert exc_info.value.code == 1008
