"""
Unit tests for the Relay main service.
"""

import pytest
import json
import asyncio
import hashlib
import hmac
import httpx
from unittest.mock import patch
from fastapi.testclient import TestClient

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_relay.app.broker.events import Event
from service_relay.app.main import RelayService, create_app
from shared.config import get_config


def relay_config(**overrides):
    overrides.setdefault("heartbeat_interval", 60)
    return get_config("relay", 8000, **overrides)


class StreamClient:
    """Streams one request from the ASGI app; the test decides when to disconnect."""

    def __init__(self, app, thread_id: str):
        self.app = app
        self.scope = {
            "type": "http",
            "asgi": {"version": "3.0", "spec_version": "2.3"},
            "http_version": "1.1",
            "method": "GET",
            "scheme": "http",
            "path": "/api/support/stream",
            "raw_path": b"/api/support/stream",
            "query_string": f"threadId={thread_id}".encode(),
            "root_path": "",
            "headers": [(b"host", b"relay")],
            "client": ("127.0.0.1", 50000),
            "server": ("relay", 80),
        }
        self.messages = asyncio.Queue()
        self.disconnected = asyncio.Event()
        self._request_sent = False
        self.task = None

    async def _receive(self):
        if not self._request_sent:
            self._request_sent = True
            return {"type": "http.request", "body": b"", "more_body": False}
        await self.disconnected.wait()
        return {"type": "http.disconnect"}

    async def _send(self, message):
        await self.messages.put(message)

    async def _next(self, message_type: str):
        while True:
            message = await asyncio.wait_for(self.messages.get(), timeout=1.0)
            if message["type"] == message_type:
                return message

    async def start(self):
        """Send the request and return the response start message."""
        self.task = asyncio.create_task(self.app(self.scope, self._receive, self._send))
        return await self._next("http.response.start")

    async def read_frame(self) -> str:
        while True:
            message = await self._next("http.response.body")
            if message["body"]:
                return message["body"].decode()

    async def disconnect(self):
        self.disconnected.set()
        await asyncio.wait_for(self.task, timeout=1.0)


class TestRelayService:
    """Test cases for RelayService."""

    @pytest.fixture
    def relay_service(self):
        """Create RelayService instance."""
        return RelayService(relay_config())

    @pytest.fixture
    def client(self, relay_service):
        """Create test client."""
        return TestClient(relay_service.app)

    def test_root_endpoint(self, client):
        """Test root endpoint."""
        response = client.get("/")
        assert response.status_code == 200
        data = response.json()
        assert data["service"] == "relay"
        assert data["version"] == "1.0.0"
        assert "sse" in data["capabilities"]

    def test_health_endpoint(self, client):
        """Test health endpoint."""
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["service"] == "relay"
        assert data["status"] == "ok"
        assert data["dependencies"]["registry"] == "ok"
        assert data["dependencies"]["notifications"] == "disabled"

    def test_create_app(self):
        """Test application factory."""
        app = create_app(relay_config())
        assert isinstance(app.state.relay_service, RelayService)

    def test_stream_requires_thread_id(self, client, relay_service):
        """Test the stream endpoint rejects a missing threadId."""
        response = client.get("/api/support/stream")

        assert response.status_code == 400
        data = response.json()
        assert data["code"] == "MISSING_PARAMETER"
        assert data["message"] == "threadId is required"
        assert data["request_id"] == response.headers["X-Request-ID"]
        assert relay_service.registry.topics() == []

    def test_stream_rejects_empty_thread_id(self, client):
        """Test an empty threadId counts as missing."""
        response = client.get("/api/support/stream", params={"threadId": ""})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_stream_connection_limit(self):
        """Test streams are refused once the session limit is reached."""
        service = RelayService(relay_config(max_sse_connections=1))
        service.session_manager.create_session("abc").open()

        transport = httpx.ASGITransport(app=service.app)
        async with httpx.AsyncClient(transport=transport, base_url="http://relay") as client:
            response = await client.get("/api/support/stream", params={"threadId": "xyz"})

        assert response.status_code == 503
        assert response.json()["code"] == "SSE_CONNECTION_LIMIT_EXCEEDED"
        service.session_manager.close_all()

    def test_webhook_publishes(self, client, relay_service):
        """Test a routable webhook reaches subscribers of its thread."""
        received = []
        relay_service.registry.subscribe("t1", lambda event: received.append(event))

        response = client.post("/api/webhooks/plain", json={
            "eventType": "thread.note_created",
            "payload": {"thread": {"id": "t1"}}
        })

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "message": "Webhook processed and clients notified"
        }
        assert len(received) == 1
        assert received[0].to_dict()["eventType"] == "thread.note_created"

    def test_webhook_without_thread_id(self, client, relay_service):
        """Test an unroutable webhook is acknowledged without publishing."""
        with patch.object(relay_service.registry, "publish") as mock_publish:
            response = client.post("/api/webhooks/plain", json={"foo": "bar"})

        assert response.status_code == 200
        assert response.json()["success"] is True
        mock_publish.assert_not_called()

    def test_webhook_invalid_json(self, client):
        """Test a body that is not JSON is a server error."""
        response = client.post(
            "/api/webhooks/plain",
            content=b"{not json",
            headers={"content-type": "application/json"}
        )

        assert response.status_code == 500
        assert response.json() == {"error": "Failed to process webhook"}

    def test_webhook_json_array(self, client):
        """Test structured but unroutable bodies are still acknowledged."""
        response = client.post("/api/webhooks/plain", json=["a", "b"])
        assert response.status_code == 200

    def test_webhook_signature(self):
        """Test signature verification when a secret is configured."""
        service = RelayService(relay_config(webhook_secret="s3cret"))
        client = TestClient(service.app)
        body = json.dumps({"payload": {"threadId": "t1"}}).encode()

        response = client.post("/api/webhooks/plain", content=body)
        assert response.status_code == 401
        assert response.json()["code"] == "INVALID_SIGNATURE"

        signature = hmac.new(b"s3cret", body, hashlib.sha256).hexdigest()
        response = client.post(
            "/api/webhooks/plain",
            content=body,
            headers={"x-plain-signature": signature}
        )
        assert response.status_code == 200

    def test_stats_endpoint(self, client, relay_service):
        """Test stats endpoint."""
        relay_service.registry.subscribe("t1", lambda event: None)

        response = client.get("/stats")

        assert response.status_code == 200
        data = response.json()
        assert data["registry"]["topics"] == {"t1": 1}
        assert data["sse"]["total_connections"] == 0
        assert "webhooks" in data
        assert data["notifications"]["enabled"] is False

    def test_metrics_endpoint(self, client):
        """Test Prometheus exposition."""
        client.post("/api/webhooks/plain", json={"foo": "bar"})

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "webhook_events_dropped_total" in response.text
        assert "http_requests_total" in response.text

    def test_shutdown_closes_sessions(self, relay_service):
        """Test lifespan shutdown closes open sessions."""
        with TestClient(relay_service.app) as client:
            client.portal.call(self._open_session, relay_service)
            assert relay_service.registry.subscriber_count("abc") == 1

        assert relay_service.session_manager.sessions == {}
        assert relay_service.registry.topics() == []

    @staticmethod
    async def _open_session(service):
        service.session_manager.create_session("abc").open()


class TestRelayFlow:
    """End-to-end: webhook in, SSE frame out."""

    @pytest.mark.asyncio
    async def test_webhook_to_stream(self):
        """Test a Plain webhook is written to a thread's open stream."""
        service = RelayService(relay_config())
        session = service.session_manager.create_session("abc")
        frames = session.frames()

        first = await asyncio.wait_for(frames.__anext__(), timeout=1.0)
        assert json.loads(first[len("data: "):]) == {"type": "connected", "threadId": "abc"}

        transport = httpx.ASGITransport(app=service.app)
        async with httpx.AsyncClient(transport=transport, base_url="http://relay") as client:
            response = await client.post("/api/webhooks/plain", json={
                "eventType": "thread.message_sent",
                "payload": {"thread": {"id": "abc"}, "message": {"text": "Hello"}}
            })
        assert response.status_code == 200

        frame = await asyncio.wait_for(frames.__anext__(), timeout=1.0)
        message = json.loads(frame[len("data: "):])
        assert message["type"] == "webhook"
        assert message["eventType"] == "thread.message_sent"
        assert message["payload"]["message"]["text"] == "Hello"

        await frames.aclose()
        assert service.registry.subscriber_count("abc") == 0
        await service.webhook_adapter.drain()

    @pytest.mark.asyncio
    async def test_stream_endpoint_lifecycle(self):
        """Test connect, publish and client disconnect through the stream endpoint."""
        service = RelayService(relay_config())
        assert service.registry.subscriber_count("abc") == 0

        stream = StreamClient(service.app, "abc")
        start = await stream.start()
        assert start["status"] == 200
        headers = dict(start["headers"])
        assert headers[b"content-type"].startswith(b"text/event-stream")
        assert headers[b"cache-control"] == b"no-cache"

        connected = await stream.read_frame()
        assert json.loads(connected[len("data: "):]) == {"type": "connected", "threadId": "abc"}
        assert service.registry.subscriber_count("abc") == 1

        service.registry.publish("abc", Event.webhook("thread.message_sent", {"text": "Hi"}))
        frame = json.loads((await stream.read_frame())[len("data: "):])
        assert frame["eventType"] == "thread.message_sent"
        assert frame["payload"] == {"text": "Hi"}

        await stream.disconnect()

        assert service.registry.subscriber_count("abc") == 0
        assert service.session_manager.sessions == {}

    @pytest.mark.asyncio
    async def test_concurrent_streams_respect_limit(self):
        """Test simultaneous stream requests cannot exceed the session limit."""
        service = RelayService(relay_config(max_sse_connections=1))
        streams = [StreamClient(service.app, "abc") for _ in range(5)]

        starts = await asyncio.gather(*(stream.start() for stream in streams))

        assert sorted(start["status"] for start in starts) == [200, 503, 503, 503, 503]
        assert len(service.session_manager.sessions) == 1

        for stream in streams:
            await stream.disconnect()

        assert service.session_manager.sessions == {}
        assert service.registry.subscriber_count("abc") == 0
