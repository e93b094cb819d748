"""
Streaming sessions for the Support Relay.

A session adapts one browser EventSource connection to one topic
subscription for the whole lifetime of the connection:

    OPENING -> CONNECTED -> (DELIVERING | HEARTBEAT)* -> CLOSING -> CLOSED

Registry deliveries never write to the connection directly. They are put
on a bounded per-session queue that the session's own frame loop drains,
so a slow browser never stalls the publisher.
"""

import asyncio
import json
import threading
import time
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, Optional

from shared.errors import ConnectionLimitError, MissingParameterError
from shared.logging import get_logger
from shared.metrics import MetricsCollector

from ..broker.events import Event
from ..broker.registry import Subscription, TopicRegistry

HEARTBEAT_FRAME = ": heartbeat\n\n"

_HEARTBEAT = object()
_CLOSE = object()


class SessionState(str, Enum):
    OPENING = "opening"
    CONNECTED = "connected"
    DELIVERING = "delivering"
    HEARTBEAT = "heartbeat"
    CLOSING = "closing"
    CLOSED = "closed"


def format_sse(message: Any) -> str:
    """Serialize an event as an SSE ``data:`` frame."""
    if isinstance(message, Event):
        message = message.to_dict()
    return f"data: {json.dumps(message, default=str)}\n\n"


class StreamSession:
    """One streaming connection bound to one topic."""

    def __init__(
        self,
        topic: str,
        registry: TopicRegistry,
        heartbeat_interval: float = 30.0,
        queue_size: int = 100,
        metrics: Optional[MetricsCollector] = None,
        on_close: Optional[Callable[["StreamSession"], None]] = None
    ):
        if not topic:
            raise MissingParameterError("threadId")

        self.session_id = str(uuid.uuid4())
        self.topic = topic
        self.registry = registry
        self.heartbeat_interval = heartbeat_interval
        self.metrics = metrics
        self.logger = get_logger("relay.sse.session")

        self.state = SessionState.OPENING
        self.created_at = datetime.now(timezone.utc)
        self.close_reason: Optional[str] = None
        self.events_sent = 0
        self.heartbeats_sent = 0

        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._subscription: Optional[Subscription] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._close_requested = False
        self._opened_at: Optional[float] = None
        self._on_close = on_close

    @property
    def closed(self) -> bool:
        return self.state in (SessionState.CLOSING, SessionState.CLOSED)

    @property
    def subscription(self) -> Optional[Subscription]:
        return self._subscription

    def open(self):
        """Queue the ``connected`` event, subscribe and start the heartbeat.

        Must be called from the event loop that will drain the session.
        """
        if self.state is not SessionState.OPENING:
            raise RuntimeError(f"Session already {self.state.value}")

        self._loop = asyncio.get_running_loop()
        self._opened_at = time.monotonic()

        # Sent straight to the client; the registry never sees it
        self._queue.put_nowait(Event.connected(self.topic))
        self._subscription = self.registry.subscribe(self.topic, self.deliver)
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        self.state = SessionState.CONNECTED

        self.logger.info(
            "SSE session opened",
            session_id=self.session_id,
            thread_id=self.topic,
            subscriber_count=self.registry.subscriber_count(self.topic)
        )

    def deliver(self, event: Any):
        """Registry subscriber callback. Never blocks."""
        if self.closed or self._loop is None:
            return

        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is self._loop:
            self._offer(event)
        else:
            self._loop.call_soon_threadsafe(self._offer, event)

    def _offer(self, event: Any):
        if self.closed:
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            # A full queue means the frame loop will wake; it sees the flag and tears down
            self.logger.warning(
                "SSE session queue full, closing session",
                session_id=self.session_id,
                thread_id=self.topic,
                queue_size=self._queue.maxsize
            )
            self.close_reason = "overflow"
            self._close_requested = True

    async def _heartbeat_loop(self):
        while not self.closed:
            await asyncio.sleep(self.heartbeat_interval)
            if self.closed or self._close_requested:
                break
            try:
                self._queue.put_nowait(_HEARTBEAT)
            except asyncio.QueueFull:
                # Frames are already pending, the connection is not idle
                continue

    async def frames(self) -> AsyncIterator[str]:
        """Yield SSE frames until the client disconnects or the session closes.

        Teardown runs on every exit path: normal close, a failed write
        (the response closes or cancels this generator) or an error.
        """
        if self.state is SessionState.OPENING:
            self.open()

        try:
            while not self.closed:
                item = await self._queue.get()
                if item is _CLOSE or self._close_requested or self.closed:
                    break

                if item is _HEARTBEAT:
                    self.state = SessionState.HEARTBEAT
                    yield HEARTBEAT_FRAME
                    self.heartbeats_sent += 1
                    if self.metrics is not None:
                        self.metrics.increment_counter("heartbeats_sent_total")
                else:
                    self.state = SessionState.DELIVERING
                    yield format_sse(item)
                    self.events_sent += 1

                if not self.closed:
                    self.state = SessionState.CONNECTED
        except Exception as e:
            self.logger.error(
                "Error in SSE session stream",
                session_id=self.session_id,
                thread_id=self.topic,
                error=str(e)
            )
            self.close_reason = self.close_reason or "error"
            raise
        finally:
            self.close(self.close_reason or "disconnect")

    def close(self, reason: str = "closed") -> bool:
        """Release the heartbeat and the subscription exactly once.

        Safe to call repeatedly and from any exit path; returns False when
        the session was already closing.
        """
        if self.closed:
            return False

        was_open = self._opened_at is not None
        self.state = SessionState.CLOSING
        self.close_reason = self.close_reason or reason

        if self._heartbeat_task is not None and not self._heartbeat_task.done():
            self._heartbeat_task.cancel()
        self._heartbeat_task = None

        if self._subscription is not None:
            self._subscription.cancel()

        # Wake a frame loop parked on an empty queue
        try:
            self._queue.put_nowait(_CLOSE)
        except asyncio.QueueFull:
            pass

        self.state = SessionState.CLOSED

        # Also releases a connection slot reserved by a session that never opened
        if self._on_close is not None:
            self._on_close(self)

        if was_open:
            duration = time.monotonic() - self._opened_at
            if self.metrics is not None:
                self.metrics.observe_histogram("session_duration_seconds", duration)
            self.logger.info(
                "SSE session closed",
                session_id=self.session_id,
                thread_id=self.topic,
                reason=self.close_reason,
                events_sent=self.events_sent,
                duration_seconds=round(duration, 3)
            )

        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "thread_id": self.topic,
            "state": self.state.value,
            "created_at": self.created_at.isoformat(),
            "events_sent": self.events_sent,
            "heartbeats_sent": self.heartbeats_sent,
            "queued": self._queue.qsize()
        }


class SessionManager:
    """Creates streaming sessions and tracks the ones currently open."""

    def __init__(
        self,
        registry: TopicRegistry,
        heartbeat_interval: float = 30.0,
        queue_size: int = 100,
        max_connections: int = 500,
        metrics: Optional[MetricsCollector] = None
    ):
        self.registry = registry
        self.heartbeat_interval = heartbeat_interval
        self.queue_size = queue_size
        self.max_connections = max_connections
        self.metrics = metrics
        self.logger = get_logger("relay.sse.manager")

        self.sessions: Dict[str, StreamSession] = {}
        self._lock = threading.RLock()

    def create_session(self, topic: Optional[str]) -> StreamSession:
        """Create a session for ``topic`` and reserve its connection slot.

        Nothing is subscribed until the session opens, but the slot counts
        against the limit from here until :meth:`StreamSession.close`, so
        requests racing to open streams cannot overshoot it.
        """
        if not topic:
            raise MissingParameterError("threadId")

        with self._lock:
            if len(self.sessions) >= self.max_connections:
                self.logger.warning(
                    "SSE connection limit reached",
                    thread_id=topic,
                    max_connections=self.max_connections
                )
                raise ConnectionLimitError(self.max_connections)

            session = StreamSession(
                topic,
                self.registry,
                heartbeat_interval=self.heartbeat_interval,
                queue_size=self.queue_size,
                metrics=self.metrics,
                on_close=self._release
            )
            self.sessions[session.session_id] = session
            self._update_gauge()

        return session

    def _release(self, session: StreamSession):
        with self._lock:
            self.sessions.pop(session.session_id, None)
            self._update_gauge()

    def _update_gauge(self):
        if self.metrics is not None:
            self.metrics.set_gauge("active_sessions", len(self.sessions))

    def close_all(self, reason: str = "shutdown") -> int:
        """Close every session, including ones whose stream never started."""
        closed = 0
        for session in list(self.sessions.values()):
            if session.close(reason):
                closed += 1

        if closed:
            self.logger.info("Closed SSE sessions", count=closed, reason=reason)
        return closed

    def get_connection_stats(self) -> Dict[str, Any]:
        """Get SSE session statistics."""
        per_topic: Dict[str, int] = {}
        for session in self.sessions.values():
            per_topic[session.topic] = per_topic.get(session.topic, 0) + 1

        return {
            "total_connections": len(self.sessions),
            "max_connections": self.max_connections,
            "heartbeat_interval": self.heartbeat_interval,
            "topics": per_topic,
            "sessions": [session.to_dict() for session in self.sessions.values()]
        }
