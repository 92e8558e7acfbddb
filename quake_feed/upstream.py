"""
WebSocket client for the upstream earthquake alert feed.

Keeps one logical connection alive:
- auth + subscribe handshake replayed after every (re)connect
- application-level ping heartbeat
- reconnection with capped exponential backoff and jitter
- per-batch winner selection and signature deduplication
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import websockets
import websockets.exceptions

from .cursor import CursorStore, MemoryCursorStore
from .dedup import SignatureTracker
from .mapper import EventMapper
from .models import ConnectionStatus, QuakeEvent

logger = logging.getLogger(__name__)

ALERT_EVENT = "earthquake_alert"
CONNECT_TIMEOUT_SECONDS = 10.0
BACKOFF_BASE_MS = 2000
BACKOFF_CAP_MS = 30000
BACKOFF_JITTER_MS = 500
NORMAL_CLOSURE = 1000


class FeedState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    STOPPED = "stopped"


@dataclass
class FeedConfig:
    """Upstream connection settings."""

    ws_url: str = ""
    bearer: str = ""
    topic: str = "earthquake_alerts"
    client_id: str = "obs-overlay"
    fixed_timestamp: int | None = None
    since_window_sec: int = 0
    ping_interval_sec: int = 25

    @classmethod
    def from_dict(cls, config: dict) -> FeedConfig:
        return cls(
            ws_url=config.get("ws_url") or "",
            bearer=config.get("bearer") or "",
            topic=config.get("topic", "earthquake_alerts"),
            client_id=config.get("client_id", "obs-overlay"),
            fixed_timestamp=config.get("fixed_timestamp"),
            since_window_sec=int(config.get("since_window_sec", 0)),
            ping_interval_sec=int(config.get("ping_interval_sec", 25)),
        )

    @property
    def has_bearer(self) -> bool:
        return bool(self.bearer and self.bearer.strip())


def reconnect_delay_ms(attempt: int, rng: random.Random | None = None) -> float:
    """Backoff for the given attempt: min(30s, 2s * 2^attempt) plus up to 0.5s jitter."""
    rng = rng or random
    base = min(BACKOFF_CAP_MS, BACKOFF_BASE_MS * 2 ** min(max(attempt, 0), 5))
    return base + rng.random() * BACKOFF_JITTER_MS


class FrameBuffer:
    """Accumulates message fragments until the message is complete.

    Binary fragments are decoded only once the whole message has arrived,
    so a multi-byte character split across fragments survives.
    """

    def __init__(self) -> None:
        self._parts: list[str | bytes] = []

    def append(self, fragment: str | bytes) -> None:
        self._parts.append(fragment)

    def flush(self) -> str:
        """Return the complete message and reset; raises UnicodeDecodeError on bad UTF-8."""
        parts, self._parts = self._parts, []
        if parts and isinstance(parts[0], bytes):
            return b"".join(parts).decode("utf-8")
        return "".join(parts)

    def __len__(self) -> int:
        return len(self._parts)



class FeedStats:
    """Statistics for the feed client."""

    def __init__(self) -> None:
        self.connections: int = 0
        self.disconnections: int = 0
        self.messages_received: int = 0
        self.parse_errors: int = 0
        self.events_accepted: int = 0
        self.duplicates_dropped: int = 0
        self.batch_discards: int = 0
        self.listener_errors: int = 0


class FeedClient:
    """WebSocket client for the upstream alert feed.

    Accepted events and connection status changes are delivered to the
    registered listeners. The connection lifecycle runs in a single asyncio
    task, so connect, reconnect and heartbeat transitions never interleave.
    """

    def __init__(
        self,
        config: FeedConfig,
        cursor_store: CursorStore | None = None,
        mapper: EventMapper | None = None,
        tracker: SignatureTracker | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._config = config
        self._cursor = cursor_store or MemoryCursorStore()
        self._mapper = mapper or EventMapper()
        self._tracker = tracker or SignatureTracker()
        self._rng = rng or random.Random()
        self._state = FeedState.DISCONNECTED
        self._event_listeners: list[Callable[[QuakeEvent], None]] = []
        self._status_listeners: list[Callable[[ConnectionStatus], None]] = []
        self._attempts = 0
        self._ws = None
        self._run_task: asyncio.Task | None = None
        self._heartbeat_task: asyncio.Task | None = None
        self._frames = FrameBuffer()
        self._stats = FeedStats()
        self._last_status: ConnectionStatus | None = None

    @property
    def state(self) -> FeedState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == FeedState.CONNECTED

    @property
    def url(self) -> str:
        return self._config.ws_url

    @property
    def attempts(self) -> int:
        return self._attempts

    # ------------------------------------------------------------------
    # Listener registration
    # ------------------------------------------------------------------

    def add_event_listener(self, listener: Callable[[QuakeEvent], None]) -> None:
        if listener not in self._event_listeners:
            self._event_listeners.append(listener)

    def add_status_listener(self, listener: Callable[[ConnectionStatus], None]) -> None:
        if listener not in self._status_listeners:
            self._status_listeners.append(listener)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Begin the connect loop. Must be called from a running event loop."""
        if self._state == FeedState.STOPPED:
            return
        if self._run_task is not None and not self._run_task.done():
            return
        if not self._config.ws_url or not self._config.ws_url.strip():
            logger.warning("Upstream ws_url is not configured; feed client stays idle")
            return
        self._run_task = asyncio.create_task(self._run(), name="quake-feed-upstream")

    async def stop(self) -> None:
        """Stop for good: no more reconnects, timers cancelled, socket closed."""
        if self._state == FeedState.STOPPED:
            return
        self._state = FeedState.STOPPED
        self._cancel_heartbeat()

        ws = self._ws
        if ws is not None:
            try:
                await ws.close(code=NORMAL_CLOSURE, reason="shutdown")
            except Exception as e:
                logger.debug(f"Error closing upstream connection: {e}")

        task = self._run_task
        self._run_task = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("Feed client stopped")

    async def _run(self) -> None:
        """Connect, serve the connection, back off, repeat until stopped."""
        while self._state != FeedState.STOPPED:
            await self._connect_once()
            if self._state == FeedState.STOPPED:
                break

            attempt = self._attempts
            self._attempts += 1
            delay = reconnect_delay_ms(attempt, self._rng)
            logger.info(f"Reconnecting in {delay:.0f} ms (attempt #{attempt + 1})")
            await asyncio.sleep(delay / 1000)

    async def _connect_once(self) -> None:
        """One connection epoch: open, handshake, receive until closed."""
        self._state = FeedState.CONNECTING
        url = self._config.ws_url
        subprotocols = ["bearer", self._config.bearer] if self._config.has_bearer else None
        logger.info(f"Connecting to upstream: {url}")

        try:
            async with websockets.connect(
                url,
                subprotocols=subprotocols,
                open_timeout=CONNECT_TIMEOUT_SECONDS,
                ping_interval=None,
                close_timeout=5,
            ) as ws:
                self._ws = ws
                await self._on_open(ws)
                await self._receive_loop(ws)
        except websockets.exceptions.ConnectionClosedOK as e:
            logger.info(f"Upstream connection closed: {e}")
            self._notify_status(ConnectionStatus.CLOSED)
        except websockets.exceptions.ConnectionClosed as e:
            logger.warning(f"Upstream connection lost: {e}")
            self._notify_status(ConnectionStatus.LOST)
        except asyncio.CancelledError:
            raise
        except (OSError, TimeoutError, websockets.exceptions.WebSocketException) as e:
            logger.warning(f"Failed to connect to upstream: {e}")
            self._notify_status(ConnectionStatus.LOST)
        except Exception as e:
            logger.error(f"Unexpected upstream error: {e}")
            self._notify_status(ConnectionStatus.LOST)
        finally:
            self._cancel_heartbeat()
            self._ws = None
            self._frames.flush()
            if self._state != FeedState.STOPPED:
                self._state = FeedState.DISCONNECTED
                self._stats.disconnections += 1

    async def _on_open(self, ws) -> None:
        self._state = FeedState.CONNECTED
        self._attempts = 0
        self._stats.connections += 1
        logger.info(f"Connected to upstream: {self._config.ws_url}")
        self._notify_status(ConnectionStatus.OPEN)

        if self._config.has_bearer:
            await self._send(ws, {"type": "auth", "authorization": f"Bearer {self._config.bearer}"})
        await self._send(ws, self.build_subscribe_frame())
        self._start_heartbeat(ws)

    async def _receive_loop(self, ws) -> None:
        """Reassemble fragmented messages and process each one in order."""
        while True:
            async for fragment in ws.recv_streaming():
                self._frames.append(fragment)
            try:
                message = self._frames.flush()
            except UnicodeDecodeError as e:
                self._stats.messages_received += 1
                self._stats.parse_errors += 1
                logger.debug(f"Dropping undecodable binary message: {e}")
                continue
            self.process_message(message)

    # ------------------------------------------------------------------
    # Outbound frames
    # ------------------------------------------------------------------

    def build_subscribe_frame(self, now: float | None = None) -> dict[str, Any]:
        """Subscribe frame with optional since-timestamp and resume cursor."""
        since = 0
        if self._config.fixed_timestamp is not None:
            since = self._config.fixed_timestamp
        elif self._config.since_window_sec > 0:
            now = time.time() if now is None else now
            since = int(now) - self._config.since_window_sec

        frame: dict[str, Any] = {
            "type": "subscribe",
            "topic": self._config.topic,
            "id": self._config.client_id,
        }
        if since > 0:
            frame["ts"] = since
        try:
            after_id = self._cursor.read()
        except Exception as e:
            logger.warning(f"Resume cursor read failed: {e}")
            after_id = None
        if after_id:
            frame["after_id"] = after_id
        return frame

    async def _send(self, ws, frame: dict) -> None:
        try:
            await ws.send(json.dumps(frame))
        except Exception as e:
            logger.debug(f"Failed to send {frame.get('type')} frame: {e}")

    def _start_heartbeat(self, ws) -> None:
        self._cancel_heartbeat()
        interval = self._config.ping_interval_sec
        if interval <= 0:
            return
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(ws, interval))

    async def _heartbeat_loop(self, ws, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            await self._send(ws, {"type": "ping", "t": int(time.time() * 1000)})

    def _cancel_heartbeat(self) -> None:
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None

    # ------------------------------------------------------------------
    # Inbound processing
    # ------------------------------------------------------------------

    def process_message(self, message: str) -> QuakeEvent | None:
        """
        Decode one complete upstream message and deliver its winning event.

        Returns:
            The accepted event, or None if nothing was delivered
        """
        self._stats.messages_received += 1
        try:
            data = json.loads(message)
        except (json.JSONDecodeError, TypeError) as e:
            self._stats.parse_errors += 1
            logger.debug(f"Failed to parse upstream message: {e}")
            return None

        if not isinstance(data, dict):
            return None
        if data.get("type") != "event" or data.get("event") != ALERT_EVENT:
            return None

        try:
            events = self._mapper.from_payload(data.get("payload"))
        except Exception as e:
            logger.debug(f"Failed to map payload: {e}")
            return None

        winner = select_latest(events)
        if winner is None:
            return None
        # Older events in the same batch are not delivered
        if len(events) > 1:
            self._stats.batch_discards += len(events) - 1
            logger.debug(f"Batch of {len(events)} events, keeping latest {winner.id}")
        return self._accept(winner)

    def _accept(self, event: QuakeEvent) -> QuakeEvent | None:
        if not self._tracker.add(event.signature):
            self._stats.duplicates_dropped += 1
            logger.debug(f"Duplicate event dropped: {event.signature}")
            return None

        try:
            self._cursor.write(event.id)
        except Exception as e:
            logger.error(f"Resume cursor write failed: {e}")

        self._stats.events_accepted += 1
        logger.info(
            f"Earthquake {event.id}: M{event.magnitude} at "
            f"({event.latitude:.3f}, {event.longitude:.3f})"
        )
        for listener in list(self._event_listeners):
            try:
                listener(event)
            except Exception as e:
                self._stats.listener_errors += 1
                logger.error(f"Event listener error: {e}")
        return event

    def _notify_status(self, status: ConnectionStatus) -> None:
        self._last_status = status
        for listener in list(self._status_listeners):
            try:
                listener(status)
            except Exception as e:
                self._stats.listener_errors += 1
                logger.error(f"Status listener error: {e}")

    def get_stats(self) -> dict:
        """Return feed client statistics."""
        return {
            "state": self._state.value,
            "url": self._config.ws_url,
            "last_status": self._last_status.value if self._last_status else None,
            "reconnect_attempts": self._attempts,
            "connections": self._stats.connections,
            "disconnections": self._stats.disconnections,
            "messages_received": self._stats.messages_received,
            "parse_errors": self._stats.parse_errors,
            "events_accepted": self._stats.events_accepted,
            "duplicates_dropped": self._stats.duplicates_dropped,
            "batch_discards": self._stats.batch_discards,
            "listener_errors": self._stats.listener_errors,
            "signatures": self._tracker.get_stats(),
        }


def select_latest(events: list[QuakeEvent]) -> QuakeEvent | None:
    """Valid event with the latest origin time; ties go to the last one seen."""
    winner = None
    for event in events:
        if not event.is_valid():
            continue
        if winner is None or event.occurred_at >= winner.occurred_at:
            winner = event
    return winner
