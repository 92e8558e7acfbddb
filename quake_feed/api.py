"""
FastAPI application for the quake feed service.

Endpoints:
- /health                  Health check
- /stats                   Feed client and broadcaster statistics
- /api/events/latest       Latest forwarded event (204 when none)
- /api/events/status       Upstream status snapshot
- /api/events/stream       SSE: settings, status, earthquake, ping
- /api/events/test         Inject a synthetic event
- /api/settings            Read / update overlay settings
- /api/settings/reset      Restore default settings
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from fastapi import FastAPI, Response, status
from sse_starlette.sse import EventSourceResponse

from .models import TestEventRequest
from .settings import OverlaySettings

if TYPE_CHECKING:
    from .broadcaster import Broadcaster, Subscription
    from .settings import SettingsStore
    from .upstream import FeedClient

logger = logging.getLogger(__name__)

SSE_TIMEOUT_SECONDS = 30 * 60


async def sse_messages(
    broadcaster: Broadcaster,
    subscription: Subscription,
    timeout: float = SSE_TIMEOUT_SECONDS,
) -> AsyncIterator[dict]:
    """Yield SSE messages for one subscription until completion or timeout.

    The subscription is always unregistered on exit, including client
    disconnects (generator cancellation).
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    try:
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.info(f"Subscriber {subscription.id} timed out")
                break
            try:
                message = await asyncio.wait_for(subscription.get(), timeout=remaining)
            except TimeoutError:
                logger.info(f"Subscriber {subscription.id} timed out")
                break
            if message is None:
                break
            yield {"event": message.event, "data": message.data}
    finally:
        broadcaster.unsubscribe(subscription)


def create_app(
    broadcaster: Broadcaster,
    settings_store: SettingsStore,
    client: FeedClient | None = None,
    sse_timeout: float = SSE_TIMEOUT_SECONDS,
) -> FastAPI:
    """Create FastAPI application.

    Components are passed in to allow testing with mocks.
    """
    start_time = datetime.now(UTC)

    app = FastAPI(
        title="Quake Feed Service",
        description="Filtered earthquake alert stream for the broadcast overlay",
        version="1.0.0",
    )

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        uptime = (datetime.now(UTC) - start_time).total_seconds()
        return {
            "status": "healthy",
            "service": "quake-feed",
            "version": "1.0.0",
            "uptime_seconds": uptime,
            "upstream": client.get_stats() if client else None,
            "broadcaster": broadcaster.get_stats(),
        }

    @app.get("/stats")
    async def stats():
        """Detailed statistics."""
        return {
            "upstream": client.get_stats() if client else {},
            "broadcaster": broadcaster.get_stats(),
        }

    # --- Events ---

    @app.get("/api/events/latest")
    async def latest_event():
        """Most recent event that passed the filter."""
        event = broadcaster.latest_event
        if event is None:
            return Response(status_code=status.HTTP_204_NO_CONTENT)
        return event.to_wire()

    @app.get("/api/events/status")
    async def event_status():
        return {
            "status": broadcaster.status.value,
            "hasEvent": broadcaster.latest_event is not None,
        }

    @app.get("/api/events/stream")
    async def event_stream():
        """Server-sent event stream for overlay clients."""
        subscription = broadcaster.subscribe()
        return EventSourceResponse(sse_messages(broadcaster, subscription, sse_timeout))

    @app.post("/api/events/test", status_code=status.HTTP_202_ACCEPTED)
    async def inject_test_event(request: TestEventRequest):
        """Push a synthetic event through the broadcast path."""
        event = request.to_event()
        forwarded = broadcaster.publish_manual(event, request.respect_filters)
        return {"id": event.id, "forwarded": forwarded}

    # --- Settings ---

    @app.get("/api/settings")
    async def read_settings():
        return settings_store.current().to_wire()

    @app.post("/api/settings")
    async def update_settings(payload: OverlaySettings):
        updated = settings_store.update(payload)
        broadcaster.on_settings_change()
        return updated.to_wire()

    @app.post("/api/settings/reset")
    async def reset_settings():
        updated = settings_store.reset()
        broadcaster.on_settings_change()
        return updated.to_wire()

    return app
