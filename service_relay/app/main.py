"""
Support Relay service.

Streams Plain thread activity to browsers over Server-Sent Events.
"""

import json
from typing import Optional

from fastapi import Query, Request
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.background import BackgroundTask

from shared.base_service import BaseService
from shared.config import ServiceConfig
from shared.errors import MissingParameterError
from shared.logging import set_thread_context

from .broker.registry import TopicRegistry
from .notifications.client import NotificationClient
from .sse.session import SessionManager
from .webhooks.adapter import SIGNATURE_HEADER, WebhookAdapter

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no"
}


class RelayService(BaseService):
    """Relay service implementation."""

    def __init__(self, config: Optional[ServiceConfig] = None):
        super().__init__("relay", 8000, config=config)

        # One broker per process, shared by both sides
        self.registry = TopicRegistry(metrics=self.metrics)
        self.session_manager = SessionManager(
            self.registry,
            heartbeat_interval=self.config.heartbeat_interval,
            queue_size=self.config.session_queue_size,
            max_connections=self.config.max_sse_connections,
            metrics=self.metrics
        )
        self.notifier = NotificationClient(
            webhook_url=self.config.notification_webhook_url,
            timeout=self.config.notification_timeout
        )
        self.webhook_adapter = WebhookAdapter(
            self.registry,
            notifier=self.notifier,
            metrics=self.metrics,
            webhook_secret=self.config.webhook_secret
        )

        self._setup_relay_routes()
        self.app.state.relay_service = self

    def _setup_relay_routes(self):
        """Set up relay-specific routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "relay",
                "message": "Support Relay - Plain thread streaming",
                "version": "1.0.0",
                "capabilities": ["sse", "webhooks"],
                "endpoints": {
                    "stream": "/api/support/stream?threadId=<thread id>",
                    "webhook": "/api/webhooks/plain"
                }
            }

        @self.app.get("/api/support/stream")
        async def support_stream(thread_id: Optional[str] = Query(None, alias="threadId")):
            """Server-Sent Events stream for one support thread."""
            if not thread_id:
                raise MissingParameterError("threadId")

            set_thread_context(thread_id)
            session = self.session_manager.create_session(thread_id)

            return StreamingResponse(
                session.frames(),
                media_type="text/event-stream",
                headers=SSE_HEADERS,
                background=BackgroundTask(self._release_session, session)
            )

        @self.app.post("/api/webhooks/plain")
        async def plain_webhook(request: Request):
            """Receive Plain webhook deliveries."""
            raw_body = await request.body()
            self.webhook_adapter.check_signature(raw_body, request.headers.get(SIGNATURE_HEADER))

            try:
                body = json.loads(raw_body)
            except (ValueError, UnicodeDecodeError) as e:
                self.logger.error("Error processing webhook", error=str(e))
                self.metrics.record_error("WEBHOOK_PARSE_ERROR")
                return JSONResponse(
                    status_code=500,
                    content={"error": "Failed to process webhook"}
                )

            self.logger.debug("Received Plain webhook", body=body)
            await self.webhook_adapter.handle(body)

            return {
                "success": True,
                "message": "Webhook processed and clients notified"
            }

        @self.app.get("/stats")
        async def get_stats():
            """Get relay statistics."""
            return {
                "sse": self.session_manager.get_connection_stats(),
                "registry": self.registry.get_stats(),
                "webhooks": self.webhook_adapter.get_stats(),
                "notifications": self.notifier.get_stats()
            }

    @staticmethod
    async def _release_session(session):
        # Covers responses whose body iterator was never started
        session.close("disconnect")

    async def _check_dependencies(self):
        """Check relay dependencies."""
        return {
            "registry": "ok",
            "notifications": "ok" if self.notifier.enabled else "disabled"
        }

    async def start(self):
        """Start relay components."""
        self.logger.info(
            "Relay service started",
            heartbeat_interval=self.config.heartbeat_interval,
            max_sse_connections=self.config.max_sse_connections,
            signature_required=bool(self.config.webhook_secret)
        )

    async def stop(self):
        """Stop relay components."""
        closed = self.session_manager.close_all("shutdown")
        await self.webhook_adapter.drain()
        self.registry.clear()

        self.logger.info("Relay service stopped", sessions_closed=closed)


def create_app(config: Optional[ServiceConfig] = None):
    """Create relay service application."""
    service = RelayService(config)
    return service.app


if __name__ == "__main__":
    service = RelayService()
    service.run()
