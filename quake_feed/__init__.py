"""Quake Feed Service - filtered earthquake alert stream for broadcast overlays."""

from .broadcaster import Broadcaster, SSEMessage, Subscription
from .cursor import CursorStore, FileCursorStore, MemoryCursorStore, create_cursor_store
from .dedup import SignatureTracker
from .mapper import EventMapper
from .models import ConnectionStatus, QuakeEvent, TestEventRequest
from .settings import OverlaySettings, SettingsStore
from .upstream import FeedClient, FeedConfig, FeedState, reconnect_delay_ms

__all__ = [
    "Broadcaster",
    "ConnectionStatus",
    "CursorStore",
    "EventMapper",
    "FeedClient",
    "FeedConfig",
    "FeedState",
    "FileCursorStore",
    "MemoryCursorStore",
    "OverlaySettings",
    "QuakeEvent",
    "SSEMessage",
    "SettingsStore",
    "SignatureTracker",
    "Subscription",
    "TestEventRequest",
    "create_cursor_store",
    "reconnect_delay_ms",
]
