"""
In-memory topic registry for the Support Relay.

Decouples producers (Plain webhook deliveries) from consumers (open
streaming sessions). State is process-local: it does not survive a
restart and is not shared between instances of the service.
"""

import threading
from typing import Any, Callable, Dict, List, Optional, Set

from shared.logging import get_logger
from shared.metrics import MetricsCollector

from .events import PLAIN_EVENT_TYPES, Event, EventKind

Subscriber = Callable[[Any], Any]


class Subscription:
    """Handle returned by :meth:`TopicRegistry.subscribe`.

    Calling it (or :meth:`cancel`) removes exactly one subscriber from
    exactly one topic. Repeated calls are no-ops.
    """

    def __init__(self, registry: "TopicRegistry", topic: str, subscriber: Subscriber):
        self.registry = registry
        self.topic = topic
        self.subscriber = subscriber
        self._lock = threading.Lock()
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def cancel(self) -> bool:
        """Remove the subscriber. Returns False if already cancelled."""
        with self._lock:
            if not self._active:
                return False
            self._active = False
        return self.registry._remove(self.topic, self.subscriber)

    def __call__(self) -> bool:
        return self.cancel()

    def __repr__(self) -> str:
        state = "active" if self._active else "cancelled"
        return f"<Subscription topic={self.topic!r} {state}>"


class TopicRegistry:
    """Maps topic keys to the set of subscribers currently listening."""

    def __init__(self, metrics: Optional[MetricsCollector] = None):
        self.logger = get_logger("relay.broker.registry")
        self.metrics = metrics
        self._topics: Dict[str, Set[Subscriber]] = {}
        self._lock = threading.RLock()

    def subscribe(self, topic: str, subscriber: Subscriber) -> Subscription:
        """Register ``subscriber`` under ``topic``.

        Registering the same subscriber twice does not duplicate delivery.
        """
        if not topic:
            raise ValueError("topic must be a non-empty string")

        with self._lock:
            subscribers = self._topics.setdefault(topic, set())
            subscribers.add(subscriber)
            count = len(subscribers)

        self.logger.debug("Subscriber added", topic=topic, subscriber_count=count)
        return Subscription(self, topic, subscriber)

    def _remove(self, topic: str, subscriber: Subscriber) -> bool:
        with self._lock:
            subscribers = self._topics.get(topic)
            if subscribers is None or subscriber not in subscribers:
                return False
            subscribers.discard(subscriber)
            if not subscribers:
                del self._topics[topic]
            count = len(subscribers)

        self.logger.debug("Subscriber removed", topic=topic, subscriber_count=count)
        return True

    def publish(self, topic: str, event: Any) -> int:
        """Deliver ``event`` to every subscriber of ``topic``.

        Subscribers are expected to return immediately (e.g. enqueue the
        event). A subscriber that raises is logged and skipped; it stays
        registered. Returns the number of subscribers that accepted the
        event.
        """
        with self._lock:
            # Snapshot so subscribers may unsubscribe while being delivered to
            subscribers: List[Subscriber] = list(self._topics.get(topic, ()))

        if self.metrics is not None:
            self.metrics.increment_counter("events_published_total", event_type=_event_label(event))

        delivered = 0
        for subscriber in subscribers:
            try:
                subscriber(event)
                delivered += 1
            except Exception as e:
                self.logger.error(
                    "Error in event subscriber",
                    topic=topic,
                    subscriber=repr(subscriber),
                    error=str(e),
                    exc_info=True
                )
                if self.metrics is not None:
                    self.metrics.increment_counter("delivery_faults_total")

        if self.metrics is not None and delivered:
            self.metrics.increment_counter("events_delivered_total", amount=delivered)

        self.logger.debug(
            "Published event",
            topic=topic,
            delivered=delivered,
            subscriber_count=len(subscribers)
        )
        return delivered

    def subscriber_count(self, topic: str) -> int:
        with self._lock:
            return len(self._topics.get(topic, ()))

    def topics(self) -> List[str]:
        with self._lock:
            return list(self._topics.keys())

    def clear(self):
        """Drop every subscription. Used on service shutdown."""
        with self._lock:
            self._topics.clear()

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            counts = {topic: len(subscribers) for topic, subscribers in self._topics.items()}
        return {
            "total_topics": len(counts),
            "total_subscribers": sum(counts.values()),
            "topics": counts
        }


def _event_label(event: Any) -> str:
    """Metric label for an event, drawn from a fixed set of values."""
    if isinstance(event, Event):
        kind, event_type = event.kind, event.event_type
    elif isinstance(event, dict):
        kind, event_type = event.get("type"), event.get("eventType")
    else:
        return "other"

    if isinstance(event_type, str) and event_type in PLAIN_EVENT_TYPES:
        return event_type
    if kind == EventKind.WEBHOOK.value and event_type is None:
        return kind
    return "other"
