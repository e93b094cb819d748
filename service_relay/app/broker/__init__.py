"""
Relay broker package.

In-process publish/subscribe keyed by conversation thread id. One
``TopicRegistry`` instance is created per service and injected into the
session manager and the webhook adapter.
"""

from .events import Event, EventKind
from .registry import Subscription, TopicRegistry

__all__ = ["Event", "EventKind", "Subscription", "TopicRegistry"]
