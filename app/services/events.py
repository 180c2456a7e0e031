"""
Stream publication for accepted check-ins.

EventBus        best-effort, at-most-once. `LocalEventBus` keeps a bounded
                in-process queue (drops and counts when full); `KafkaEventBus`
                publishes JSON to a Kafka topic with kafka-python.
LiveBroadcaster pushes to websocket listeners connected right now. No
                durability, no delivery guarantee.

Payloads never carry the identity or the note text.
"""
from __future__ import annotations

import asyncio
import itertools
import json
import queue
import threading
from datetime import datetime
from typing import Any, Optional, Protocol

from kafka import KafkaProducer
from kafka.errors import KafkaError

from app.core.errors import TransientStoreError
from app.core.logging import get_logger

logger = get_logger(__name__)


def stream_payload(
    check_in_id: str,
    emotion: str,
    intensity: int,
    region_bucket: str,
    timestamp: datetime,
) -> dict[str, Any]:
    return {
        "id": check_in_id,
        "emotion": emotion,
        "intensity": intensity,
        "region": region_bucket,
        "timestamp": timestamp.isoformat(),
    }


def _encode(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload, ensure_ascii=False, default=str).encode("utf-8")


class EventBus(Protocol):
    def publish(self, topic: str, payload: dict[str, Any]) -> None: ...

    def stats(self) -> dict[str, Any]: ...

    def close(self) -> None: ...


class LocalEventBus:
    def __init__(self, maxsize: int = 10_000):
        self.events: "queue.Queue[tuple[str, dict[str, Any]]]" = queue.Queue(maxsize=maxsize)
        self._lock = threading.Lock()
        self.published = 0
        self.dropped = 0

    def publish(self, topic: str, payload: dict[str, Any]) -> None:
        try:
            self.events.put_nowait((topic, payload))
        except queue.Full:
            with self._lock:
                self.dropped += 1
            logger.warning(
                "Local event queue full, dropping event",
                extra={"action": "event_dropped", "context": {"topic": topic}},
            )
            return
        with self._lock:
            self.published += 1

    def drain(self) -> list[tuple[str, dict[str, Any]]]:
        items = []
        while True:
            try:
                items.append(self.events.get_nowait())
            except queue.Empty:
                return items

    def stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "backend": "local",
                "queue_depth": self.events.qsize(),
                "published": self.published,
                "dropped": self.dropped,
            }

    def close(self) -> None:
        pass


class KafkaEventBus:
    """Producer is created on first publish so startup never blocks on the broker."""

    def __init__(self, bootstrap_servers: str, send_timeout: float = 1.5):
        self._bootstrap_servers = bootstrap_servers
        self._send_timeout = send_timeout
        self._producer: Optional[KafkaProducer] = None
        self._lock = threading.Lock()
        self.published = 0
        self.failed = 0

    def _get_producer(self) -> KafkaProducer:
        with self._lock:
            if self._producer is None:
                self._producer = KafkaProducer(
                    bootstrap_servers=self._bootstrap_servers,
                    value_serializer=_encode,
                    linger_ms=25,
                    retries=3,
                    acks="all",
                )
            return self._producer

    def publish(self, topic: str, payload: dict[str, Any]) -> None:
        try:
            future = self._get_producer().send(topic, payload)
            future.get(timeout=self._send_timeout)
        except KafkaError as exc:
            with self._lock:
                self.failed += 1
            raise TransientStoreError(f"Kafka publish failed: {exc}", store="event_bus") from exc
        with self._lock:
            self.published += 1

    def stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "backend": "kafka",
                "connected": self._producer is not None,
                "published": self.published,
                "failed": self.failed,
            }

    def close(self) -> None:
        with self._lock:
            producer, self._producer = self._producer, None
        if producer is not None:
            producer.close(timeout=2)


class LiveBroadcaster:
    """Fan check-in payloads out to connected websocket listeners."""

    def __init__(self, listener_queue_size: int = 100):
        self._listener_queue_size = listener_queue_size
        self._listeners: dict[int, tuple[asyncio.AbstractEventLoop, asyncio.Queue]] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self.delivered = 0
        self.dropped = 0

    def subscribe(self) -> tuple[int, asyncio.Queue]:
        """Call from inside the listener's event loop."""
        loop = asyncio.get_running_loop()
        q: asyncio.Queue = asyncio.Queue(maxsize=self._listener_queue_size)
        with self._lock:
            listener_id = next(self._ids)
            self._listeners[listener_id] = (loop, q)
        return listener_id, q

    def unsubscribe(self, listener_id: int) -> None:
        with self._lock:
            self._listeners.pop(listener_id, None)

    @property
    def listener_count(self) -> int:
        with self._lock:
            return len(self._listeners)

    def _offer(self, q: asyncio.Queue, message: dict[str, Any]) -> None:
        try:
            q.put_nowait(message)
        except asyncio.QueueFull:
            with self._lock:
                self.dropped += 1

    def publish(self, topic: str, payload: dict[str, Any]) -> int:
        """Thread-safe. Returns the number of listeners the message was handed to."""
        message = {"topic": topic, "data": payload}
        with self._lock:
            listeners = list(self._listeners.items())
        handed = 0
        for listener_id, (loop, q) in listeners:
            try:
                loop.call_soon_threadsafe(self._offer, q, message)
                handed += 1
            except RuntimeError:
                # Loop already closed; the socket is gone.
                self.unsubscribe(listener_id)
        with self._lock:
            self.delivered += handed
        return handed

    def stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "listeners": len(self._listeners),
                "delivered": self.delivered,
                "dropped": self.dropped,
            }
