"""
Notification client for the Support Relay.

Posts a short human-readable line (e.g. to a Slack incoming webhook) when
an agent replies on a thread. Purely informational: nothing on the
streaming path waits for it.
"""

import httpx
from typing import Any, Dict, Optional

from shared.logging import get_logger
from shared.errors import ServiceError


class NotificationClient:
    """Client for the side notification webhook."""

    def __init__(self, webhook_url: Optional[str] = None, timeout: float = 5.0):
        self.webhook_url = webhook_url
        self.timeout = timeout
        self.logger = get_logger("relay.notifications.client")
        self.sent_count = 0
        self.failed_count = 0

    @property
    def enabled(self) -> bool:
        return bool(self.webhook_url)

    async def notify(self, text: str, context: Optional[Dict[str, Any]] = None) -> bool:
        """Send a notification line. Returns False when the channel is disabled."""
        if not self.enabled:
            self.logger.info("Notification", text=text, **(context or {}))
            return False

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.webhook_url, json={"text": text})

            if response.status_code >= 400:
                self.failed_count += 1
                self.logger.warning(
                    "Notification rejected",
                    status_code=response.status_code,
                    response=response.text[:200]
                )
                return False

            self.sent_count += 1
            self.logger.debug("Notification sent", status_code=response.status_code)
            return True

        except httpx.TimeoutException:
            self.failed_count += 1
            self.logger.error("Notification webhook timeout")
            raise ServiceError("Notification webhook timeout")
        except httpx.RequestError as e:
            self.failed_count += 1
            self.logger.error("Notification webhook request error", error=str(e))
            raise ServiceError("Notification webhook unavailable", {"error": str(e)})

    def get_stats(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "sent": self.sent_count,
            "failed": self.failed_count
        }
