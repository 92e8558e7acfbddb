"""
Server-push broadcaster for the earthquake overlay.

Owns the latest-event and status snapshots and the active subscriber set.
The feed client hands events and status changes over through a queue; the
broadcast loop applies the filter policy and fans out to subscribers.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Any, Protocol

from .models import ConnectionStatus, QuakeEvent

logger = logging.getLogger(__name__)

KEEPALIVE_INTERVAL_SECONDS = 25.0

# Fixed regional bounding box (inclusive)
REGION_LAT_MIN = 35.0
REGION_LAT_MAX = 43.0
REGION_LON_MIN = 25.0
REGION_LON_MAX = 45.0

_subscription_ids = itertools.count(1)


class FilterPolicy(Protocol):
    min_mag: float
    stream_enabled: bool

    def to_wire(self) -> dict: ...


class SettingsSource(Protocol):
    def current(self) -> FilterPolicy: ...


class SubscriptionClosed(Exception):
    """Push attempted on a completed subscription."""


@dataclass(frozen=True)
class SSEMessage:
    """A named server-push message; data is already rendered text."""

    event: str
    data: str


class Subscription:
    """
    A single downstream push stream.

    Backed by a bounded asyncio queue. Pushes never block: a full or closed
    queue raises, and the broadcaster drops the subscriber.
    """

    def __init__(self, max_queue_size: int = 100):
        self.id = next(_subscription_ids)
        self._queue: asyncio.Queue[SSEMessage | None] = asyncio.Queue(maxsize=max_queue_size)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def push(self, message: SSEMessage) -> None:
        if self._closed:
            raise SubscriptionClosed(f"subscription {self.id} is closed")
        self._queue.put_nowait(message)

    async def get(self) -> SSEMessage | None:
        """Next message, or None once the subscription has completed."""
        if self._closed and self._queue.empty():
            return None
        return await self._queue.get()

    def close(self) -> None:
        """Complete the stream; a waiting consumer receives None."""
        if self._closed:
            return
        self._closed = True
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(None)

    def pending(self) -> list[SSEMessage]:
        """Drain queued messages without waiting."""
        messages = []
        while not self._queue.empty():
            message = self._queue.get_nowait()
            if message is not None:
                messages.append(message)
        return messages


@dataclass
class BroadcasterStats:
    """Statistics for the broadcaster."""

    events_received: int = 0
    events_broadcast: int = 0
    events_filtered: int = 0
    events_dropped: int = 0
    status_changes: int = 0
    keepalives_sent: int = 0
    clients_connected: int = 0
    clients_disconnected: int = 0
    push_failures: int = 0


def _render(data: Any) -> str:
    return data if isinstance(data, str) else json.dumps(data)


class Broadcaster:
    """
    Fan-out hub between the feed client and SSE subscribers.

    New subscribers immediately receive the settings snapshot, the current
    status and the latest event (if any), in that order.
    """

    def __init__(
        self,
        settings_source: SettingsSource,
        keepalive_interval: float = KEEPALIVE_INTERVAL_SECONDS,
        max_queue_size: int = 1000,
        subscriber_queue_size: int = 100,
    ):
        """
        Initialize broadcaster.

        Args:
            settings_source: Provides the current filter policy / settings
            keepalive_interval: Seconds between keepalive pings (<= 0 disables)
            max_queue_size: Feed events to queue before dropping
            subscriber_queue_size: Per-subscriber backlog before it is dropped
        """
        self._settings = settings_source
        self._keepalive_interval = keepalive_interval
        self._max_queue_size = max_queue_size
        self._subscriber_queue_size = subscriber_queue_size
        self._lock = threading.Lock()
        self._subscribers: set[Subscription] = set()
        self._latest_event: QuakeEvent | None = None
        self._status = ConnectionStatus.CLOSED
        self._stats = BroadcasterStats()
        self._queue: asyncio.Queue | None = None
        self._is_running = False
        self._broadcast_task: asyncio.Task | None = None
        self._keepalive_task: asyncio.Task | None = None

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    @property
    def latest_event(self) -> QuakeEvent | None:
        return self._latest_event

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def is_running(self) -> bool:
        return self._is_running

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Create the hand-over queue."""
        self._queue = asyncio.Queue(maxsize=self._max_queue_size)
        self._is_running = True
        logger.info("Broadcaster started")

    async def start_broadcast_loop(self) -> None:
        """Start the background broadcast and keepalive loops."""
        if self._broadcast_task is None or self._broadcast_task.done():
            self._broadcast_task = asyncio.create_task(self._broadcast_loop())
        if self._keepalive_interval > 0 and (
            self._keepalive_task is None or self._keepalive_task.done()
        ):
            self._keepalive_task = asyncio.create_task(self._keepalive_loop())

    def stop(self) -> None:
        """Stop loops and complete every active subscription."""
        self._is_running = False
        for task in (self._broadcast_task, self._keepalive_task):
            if task:
                task.cancel()
        self._broadcast_task = None
        self._keepalive_task = None

        with self._lock:
            subscribers = list(self._subscribers)
            self._subscribers.clear()
        for subscription in subscribers:
            subscription.close()
        self._stats.clients_disconnected += len(subscribers)
        logger.info(f"Broadcaster stopped ({len(subscribers)} subscribers completed)")

    # ------------------------------------------------------------------
    # Subscribers
    # ------------------------------------------------------------------

    def subscribe(self) -> Subscription:
        """Register a subscriber and push the current snapshots to it."""
        subscription = Subscription(self._subscriber_queue_size)
        with self._lock:
            self._subscribers.add(subscription)
            self._stats.clients_connected += 1
            initial = [
                SSEMessage("settings", _render(self._settings.current().to_wire())),
                SSEMessage("status", self._status.value),
            ]
            if self._latest_event is not None:
                initial.append(SSEMessage("earthquake", _render(self._latest_event.to_wire())))
            try:
                for message in initial:
                    subscription.push(message)
            except Exception as e:
                logger.debug(f"Failed to send initial snapshot: {e}")
        logger.info(f"Subscriber {subscription.id} attached (total: {self.subscriber_count})")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        """Remove a subscriber; safe to call more than once."""
        with self._lock:
            if subscription not in self._subscribers:
                return
            self._subscribers.discard(subscription)
            self._stats.clients_disconnected += 1
        subscription.close()
        logger.info(f"Subscriber {subscription.id} detached (total: {self.subscriber_count})")

    # ------------------------------------------------------------------
    # Feed client hand-over
    # ------------------------------------------------------------------

    def publish_event(self, event: QuakeEvent) -> None:
        """Queue an event from the feed client."""
        self._enqueue(("event", event))

    def publish_status(self, status: ConnectionStatus) -> None:
        """Queue a status change from the feed client."""
        self._enqueue(("status", status))

    def _enqueue(self, item: tuple[str, Any]) -> None:
        if self._queue is None:
            logger.warning("Publish called before start()")
            return
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            self._stats.events_dropped += 1
            logger.warning("Broadcast queue full, dropping update")

    async def _broadcast_loop(self) -> None:
        """Drain the hand-over queue in order."""
        logger.info("Broadcast loop started")
        while self._is_running:
            try:
                kind, payload = await self._queue.get()
                if kind == "event":
                    self.handle_event(payload)
                else:
                    self.handle_status(payload)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Broadcast error: {e}")

    # ------------------------------------------------------------------
    # Distribution
    # ------------------------------------------------------------------

    def handle_event(self, event: QuakeEvent) -> bool:
        """Forward an event if it passes the filter policy."""
        self._stats.events_received += 1
        if not self.should_emit(event):
            self._stats.events_filtered += 1
            return False
        self._emit_event(event)
        return True

    def handle_status(self, status: ConnectionStatus) -> None:
        with self._lock:
            self._status = status
        self._stats.status_changes += 1
        self._send_to_all(SSEMessage("status", status.value))

    def publish_manual(self, event: QuakeEvent | None, respect_filters: bool) -> bool:
        """Inject an operator-supplied event, optionally bypassing the filter."""
        if event is None:
            return False
        if respect_filters and not self.should_emit(event):
            logger.info(f"Manual event {event.id} filtered out")
            return False
        logger.info(f"Publishing manual event {event.id}")
        self._emit_event(event)
        return True

    def on_settings_change(self) -> None:
        """Push the updated settings to every subscriber."""
        self._send_to_all(SSEMessage("settings", _render(self._settings.current().to_wire())))

    def send_keepalive(self) -> None:
        self._stats.keepalives_sent += 1
        self._send_to_all(SSEMessage("ping", str(int(time.time() * 1000))))

    def should_emit(self, event: QuakeEvent | None) -> bool:
        """Filter policy: enabled, magnitude threshold, fixed region."""
        if event is None or not event.is_valid():
            return False
        policy = self._settings.current()
        if not policy.stream_enabled:
            return False
        if not math.isfinite(event.magnitude) or event.magnitude < policy.min_mag:
            return False
        return in_region(event.latitude, event.longitude)

    def _emit_event(self, event: QuakeEvent) -> None:
        with self._lock:
            self._latest_event = event
        self._stats.events_broadcast += 1
        self._send_to_all(SSEMessage("earthquake", _render(event.to_wire())))

    def _send_to_all(self, message: SSEMessage) -> None:
        """Push to a snapshot of subscribers; drop any that fail."""
        with self._lock:
            subscribers = list(self._subscribers)

        for subscription in subscribers:
            try:
                subscription.push(message)
            except Exception as e:
                self._stats.push_failures += 1
                logger.debug(f"Dropping subscriber {subscription.id}: {e!r}")
                self.unsubscribe(subscription)

    async def _keepalive_loop(self) -> None:
        while self._is_running:
            try:
                await asyncio.sleep(self._keepalive_interval)
                self.send_keepalive()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Keepalive error: {e}")

    def get_stats(self) -> dict:
        """Get broadcaster statistics."""
        return {
            "is_running": self._is_running,
            "subscriber_count": self.subscriber_count,
            "status": self._status.value,
            "has_event": self._latest_event is not None,
            "events_received": self._stats.events_received,
            "events_broadcast": self._stats.events_broadcast,
            "events_filtered": self._stats.events_filtered,
            "events_dropped": self._stats.events_dropped,
            "status_changes": self._stats.status_changes,
            "keepalives_sent": self._stats.keepalives_sent,
            "clients_connected": self._stats.clients_connected,
            "clients_disconnected": self._stats.clients_disconnected,
            "push_failures": self._stats.push_failures,
            "queue_size": self._queue.qsize() if self._queue else 0,
        }


def in_region(latitude: float, longitude: float) -> bool:
    return (
        REGION_LAT_MIN <= latitude <= REGION_LAT_MAX
        and REGION_LON_MIN <= longitude <= REGION_LON_MAX
    )
