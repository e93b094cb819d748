"""
Event envelopes carried by the topic registry.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


# Plain webhook event types reported as their own metric label; anything
# else is reported as "other" since the sender controls the value
PLAIN_EVENT_TYPES = frozenset({
    "thread.thread_created",
    "thread.thread_status_transitioned",
    "thread.thread_assignment_transitioned",
    "thread.thread_labels_changed",
    "thread.thread_priority_changed",
    "thread.email_received",
    "thread.email_sent",
    "thread.chat_received",
    "thread.chat_sent",
    "thread.note_created",
    "thread.message_sent",
    "thread.reply_sent",
})


class EventKind(str, Enum):
    """Event kinds the relay knows how to produce."""

    CONNECTED = "connected"
    WEBHOOK = "webhook"


@dataclass(frozen=True)
class Event:
    """A single event pushed to streaming clients.

    ``kind`` is kept as a plain string so envelopes of kinds this service
    does not know about pass through untouched.
    """

    kind: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def connected(cls, thread_id: str) -> "Event":
        return cls(EventKind.CONNECTED.value, {"threadId": thread_id})

    @classmethod
    def webhook(cls, event_type: Optional[str], payload: Any) -> "Event":
        return cls(EventKind.WEBHOOK.value, {"eventType": event_type, "payload": payload})

    @property
    def known_kind(self) -> Optional[EventKind]:
        try:
            return EventKind(self.kind)
        except ValueError:
            return None

    @property
    def event_type(self) -> Optional[str]:
        value = self.data.get("eventType")
        return value if isinstance(value, str) else None

    def to_dict(self) -> Dict[str, Any]:
        """Wire shape sent to browsers."""
        message: Dict[str, Any] = {"type": self.kind}
        message.update(self.data)
        if self.known_kind is not EventKind.CONNECTED:
            message.setdefault("timestamp", _isoformat(self.timestamp))
        return message


def _isoformat(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
