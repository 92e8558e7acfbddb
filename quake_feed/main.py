"""
Quake Feed Service Main Entry Point

Starts:
- Upstream WebSocket client (earthquake alert feed)
- Broadcaster (filter policy, latest snapshot, SSE fan-out, keepalive)
- FastAPI server (events, settings, health)

Usage:
    python -m quake_feed.main
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from pathlib import Path

import uvicorn
import yaml

from .api import create_app
from .broadcaster import Broadcaster
from .cursor import create_cursor_store
from .dedup import SignatureTracker
from .settings import SettingsStore
from .upstream import FeedClient, FeedConfig

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[logging.StreamHandler()],
)
logger = logging.getLogger(__name__)

CONFIG_PATH = Path(__file__).parent.parent / "config" / "config.yaml"

_INT_KEYS = {
    "port",
    "fixed_timestamp",
    "since_window_sec",
    "ping_interval_sec",
    "dedup_max_size",
    "dedup_max_age_sec",
    "keepalive_interval_sec",
    "sse_timeout_sec",
}


def load_config(config_path: Path | None = None) -> dict:
    """
    Load configuration from config file and environment.

    Priority: Environment variables > config file > defaults
    """
    config_path = config_path or CONFIG_PATH

    defaults = {
        "ws_url": "",
        "bearer": "",
        "topic": "earthquake_alerts",
        "client_id": "obs-overlay",
        "fixed_timestamp": None,
        "since_window_sec": 0,
        "ping_interval_sec": 25,
        "cursor_path": None,
        "settings_path": "backend-data/settings.json",
        "dedup_max_size": 10000,
        "dedup_max_age_sec": 86400,
        "keepalive_interval_sec": 25,
        "sse_timeout_sec": 1800,
        "host": "0.0.0.0",
        "port": 8080,
        "log_level": "INFO",
    }

    if config_path.exists():
        try:
            with open(config_path) as f:
                file_config = yaml.safe_load(f) or {}
            defaults.update(file_config)
        except Exception as e:
            logger.warning(f"Failed to load config: {e}")

    env_mappings = {
        "EMSC_WS_URL": "ws_url",
        "EMSC_BEARER": "bearer",
        "EMSC_TOPIC": "topic",
        "EMSC_CLIENT_ID": "client_id",
        "EMSC_FIXED_TIMESTAMP": "fixed_timestamp",
        "EMSC_SINCE_WINDOW_SEC": "since_window_sec",
        "EMSC_PING_INTERVAL_SEC": "ping_interval_sec",
        "CURSOR_PATH": "cursor_path",
        "SETTINGS_PATH": "settings_path",
        "DEDUP_MAX_SIZE": "dedup_max_size",
        "DEDUP_MAX_AGE_SEC": "dedup_max_age_sec",
        "KEEPALIVE_INTERVAL_SEC": "keepalive_interval_sec",
        "SSE_TIMEOUT_SEC": "sse_timeout_sec",
        "HOST": "host",
        "PORT": "port",
        "LOG_LEVEL": "log_level",
    }

    for env_key, config_key in env_mappings.items():
        value = os.environ.get(env_key)
        if value:
            if config_key in _INT_KEYS:
                try:
                    defaults[config_key] = int(value)
                except ValueError:
                    logger.warning(f"Invalid {env_key}={value!r}, keeping {defaults[config_key]}")
            else:
                defaults[config_key] = value

    return defaults


async def run_service():
    """Run the Quake Feed Service."""
    config = load_config()
    logging.getLogger().setLevel(config["log_level"])

    logger.info("=" * 60)
    logger.info("Quake Feed Service Starting")
    logger.info("=" * 60)
    logger.info(f"Upstream URL: {config['ws_url'] or '(not configured)'}")
    logger.info(f"Cursor store: {config['cursor_path'] or 'memory'}")
    logger.info(f"Settings file: {config['settings_path']}")
    logger.info(f"API Port: {config['port']}")

    settings_store = SettingsStore(config["settings_path"])
    settings_store.load()

    broadcaster = Broadcaster(
        settings_store,
        keepalive_interval=float(config["keepalive_interval_sec"]),
    )

    client = FeedClient(
        FeedConfig.from_dict(config),
        cursor_store=create_cursor_store(config["cursor_path"]),
        tracker=SignatureTracker(
            max_size=int(config["dedup_max_size"]),
            max_age_seconds=float(config["dedup_max_age_sec"]),
        ),
    )

    # Wire feed client -> broadcaster queue
    client.add_event_listener(broadcaster.publish_event)
    client.add_status_listener(broadcaster.publish_status)

    broadcaster.start()

    app = create_app(
        broadcaster=broadcaster,
        settings_store=settings_store,
        client=client,
        sse_timeout=float(config["sse_timeout_sec"]),
    )

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def signal_handler(sig, frame):
        logger.info(f"Received signal {sig}, shutting down...")
        loop.call_soon_threadsafe(shutdown_event.set)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    uvicorn_config = uvicorn.Config(
        app,
        host=config["host"],
        port=int(config["port"]),
        log_level="info",
    )
    server = uvicorn.Server(uvicorn_config)

    async def run_api():
        # uvicorn handles SIGINT/SIGTERM while serving
        await server.serve()
        shutdown_event.set()

    async def wait_for_shutdown():
        await shutdown_event.wait()
        await client.stop()
        broadcaster.stop()
        server.should_exit = True

    async def periodic_stats():
        while not shutdown_event.is_set():
            try:
                u_stats = client.get_stats()
                b_stats = broadcaster.get_stats()
                logger.info(
                    f"Stats: {u_stats['events_accepted']} events accepted, "
                    f"{u_stats['duplicates_dropped']} duplicates, "
                    f"{b_stats['events_broadcast']} broadcast, "
                    f"{b_stats['subscriber_count']} subscribers, "
                    f"upstream={u_stats['state']}"
                )
            except Exception as e:
                logger.error(f"Stats error: {e}")
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=300)
            except TimeoutError:
                continue

    try:
        await broadcaster.start_broadcast_loop()
        client.start()
        await asyncio.gather(
            run_api(),
            wait_for_shutdown(),
            periodic_stats(),
        )
    except asyncio.CancelledError:
        logger.info("Service tasks cancelled")
    finally:
        logger.info("Cleaning up...")
        await client.stop()
        broadcaster.stop()
        logger.info("Quake Feed Service stopped")


if __name__ == "__main__":
    asyncio.run(run_service())
