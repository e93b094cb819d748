"""
Plain webhook adapter for the Support Relay.

The only producer into the topic registry. Plain posts an event whenever
something happens on a thread (for instance an agent replying from
Slack); the adapter works out which thread it concerns and publishes a
``webhook`` event to everyone streaming that thread.

Plain's payloads vary between event types, so every lookup here is
defensive: a malformed sub-field makes the event unroutable, never a
rejected delivery.
"""

import asyncio
import hashlib
import hmac
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Set

from shared.errors import SignatureError
from shared.logging import get_logger
from shared.metrics import MetricsCollector

from ..broker.events import Event
from ..broker.registry import TopicRegistry
from ..notifications.client import NotificationClient

SIGNATURE_HEADER = "x-plain-signature"

NOTIFY_EVENT_TYPES = frozenset({"thread.reply_sent", "thread.message_sent"})

PREVIEW_LENGTH = 140


@dataclass
class WebhookResult:
    """Outcome of one webhook delivery."""

    event_type: Optional[str]
    thread_id: Optional[str]
    published: bool = False
    delivered: int = 0
    notified: bool = False


def _dig(value: Any, *path: str) -> Any:
    """Follow ``path`` through nested mappings, None on any miss."""
    for key in path:
        if not isinstance(value, Mapping):
            return None
        value = value.get(key)
    return value


def _text(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _key(value: Any) -> Optional[str]:
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return _text(value)


def extract_event_type(body: Any) -> Optional[str]:
    return _text(_dig(body, "eventType")) or _text(_dig(body, "type"))


def _present(value: Any) -> bool:
    # Empty objects and arrays count as present; empty scalars do not
    if value is None or value is False:
        return False
    if isinstance(value, (str, int, float)) and not value:
        return False
    return True


def extract_payload(body: Any) -> Any:
    """The event payload: ``payload``, then ``data``, then the body itself."""
    for key in ("payload", "data"):
        candidate = _dig(body, key)
        if _present(candidate):
            return candidate
    return body


def extract_thread_id(body: Any, payload: Any = None) -> Optional[str]:
    """Resolve the topic key; the first non-empty candidate wins.

    1. ``payload.threadId``
    2. ``payload.thread.id``
    3. ``body.threadId``
    """
    if payload is None:
        payload = extract_payload(body)

    for candidate in (
        _dig(payload, "threadId"),
        _dig(payload, "thread", "id"),
        _dig(body, "threadId"),
    ):
        thread_id = _key(candidate)
        if thread_id:
            return thread_id
    return None


def build_notification_text(event_type: Optional[str], payload: Any, thread_id: str) -> str:
    """Human-readable summary of a thread event for the side channel."""
    actor = (
        _text(_dig(payload, "message", "createdBy", "user", "fullName"))
        or _text(_dig(payload, "message", "createdBy", "fullName"))
        or _text(_dig(payload, "createdBy", "user", "fullName"))
        or _text(_dig(payload, "createdBy", "fullName"))
        or ("An agent" if event_type == "thread.reply_sent" else "Someone")
    )
    title = _text(_dig(payload, "thread", "title")) or f"thread {thread_id}"
    customer = (
        _text(_dig(payload, "thread", "customer", "fullName"))
        or _text(_dig(payload, "thread", "customer", "email", "email"))
        or _text(_dig(payload, "customer", "fullName"))
    )
    body = (
        _text(_dig(payload, "message", "text"))
        or _text(_dig(payload, "message", "markdown"))
        or _text(_dig(payload, "text"))
    )

    verb = "replied" if event_type == "thread.reply_sent" else "sent a message"
    line = f'{actor} {verb} on "{title}"'
    if customer:
        line += f" ({customer})"
    if body:
        preview = body if len(body) <= PREVIEW_LENGTH else body[:PREVIEW_LENGTH - 3] + "..."
        line += f": {preview}"
    return line


def verify_signature(secret: str, raw_body: bytes, signature: Optional[str]) -> bool:
    """Check a hex HMAC-SHA256 signature of the raw request body."""
    if not signature:
        return False
    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower())


class WebhookAdapter:
    """Turns Plain webhook deliveries into topic registry events."""

    def __init__(
        self,
        registry: TopicRegistry,
        notifier: Optional[NotificationClient] = None,
        metrics: Optional[MetricsCollector] = None,
        webhook_secret: Optional[str] = None
    ):
        self.registry = registry
        self.notifier = notifier
        self.metrics = metrics
        self.webhook_secret = webhook_secret
        self.logger = get_logger("relay.webhooks.adapter")

        self.received_count = 0
        self.dropped_count = 0
        self._pending: Set[asyncio.Task] = set()

    def check_signature(self, raw_body: bytes, signature: Optional[str]):
        """Raise SignatureError when a secret is configured and does not match."""
        if not self.webhook_secret:
            return
        if not verify_signature(self.webhook_secret, raw_body, signature):
            raise SignatureError(details={"header": SIGNATURE_HEADER})

    async def handle(self, body: Any) -> WebhookResult:
        """Publish one already-parsed webhook body."""
        self.received_count += 1

        event_type = extract_event_type(body)
        payload = extract_payload(body)
        thread_id = extract_thread_id(body, payload)
        result = WebhookResult(event_type=event_type, thread_id=thread_id)

        self.logger.info("Processing webhook", event_type=event_type, thread_id=thread_id)

        if not thread_id:
            self.dropped_count += 1
            if self.metrics is not None:
                self.metrics.increment_counter("webhook_events_dropped_total", reason="missing_thread_id")
            self.logger.warning(
                "Webhook has no thread id, dropping",
                event_type=event_type,
                keys=sorted(body.keys()) if isinstance(body, Mapping) else type(body).__name__
            )
            return result

        result.delivered = self.registry.publish(thread_id, Event.webhook(event_type, payload))
        result.published = True

        self.logger.info(
            "Emitted webhook event",
            event_type=event_type,
            thread_id=thread_id,
            listeners=self.registry.subscriber_count(thread_id)
        )

        if event_type in NOTIFY_EVENT_TYPES:
            result.notified = self._schedule_notification(event_type, payload, thread_id)

        return result

    def _schedule_notification(self, event_type: str, payload: Any, thread_id: str) -> bool:
        if self.notifier is None:
            return False

        try:
            text = build_notification_text(event_type, payload, thread_id)
        except Exception as e:
            self.logger.error("Failed to build notification", thread_id=thread_id, error=str(e))
            return False

        task = asyncio.get_running_loop().create_task(
            self._notify(text, event_type, thread_id)
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return True

    async def _notify(self, text: str, event_type: str, thread_id: str):
        try:
            await self.notifier.notify(text, {"event_type": event_type, "thread_id": thread_id})
        except Exception as e:
            self.logger.error(
                "Notification failed",
                event_type=event_type,
                thread_id=thread_id,
                error=str(e)
            )

    async def drain(self, timeout: float = 5.0):
        """Wait for in-flight notifications, cancelling what is left after ``timeout``."""
        if not self._pending:
            return
        pending = list(self._pending)
        done, not_done = await asyncio.wait(pending, timeout=timeout)
        for task in not_done:
            task.cancel()

    def get_stats(self):
        return {
            "received": self.received_count,
            "dropped": self.dropped_count,
            "pending_notifications": len(self._pending),
            "signature_required": bool(self.webhook_secret)
        }
