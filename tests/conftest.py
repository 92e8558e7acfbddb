"""
Shared test fixtures for pytest
"""

from datetime import UTC, datetime

import pytest

from quake_feed.broadcaster import Broadcaster
from quake_feed.models import QuakeEvent
from quake_feed.settings import SettingsStore

ORIGIN_TIME = datetime(2024, 2, 6, 1, 17, 34, tzinfo=UTC)


@pytest.fixture
def settings_store(tmp_path):
    """SettingsStore backed by a temp file, defaults loaded"""
    store = SettingsStore(tmp_path / "settings.json")
    store.load()
    return store


@pytest.fixture
def broadcaster(settings_store):
    """Broadcaster with keepalive disabled"""
    return Broadcaster(settings_store, keepalive_interval=0)


@pytest.fixture
def make_event():
    """Factory for events inside the region and above the default threshold"""

    def _make(**overrides) -> QuakeEvent:
        fields = {
            "id": "20240206_0000017",
            "occurred_at": ORIGIN_TIME,
            "latitude": 37.17,
            "longitude": 37.03,
            "magnitude": 4.5,
            "depth": 10.0,
            "magnitude_type": "mw",
            "province": "KAHRAMANMARAS",
            "region": "CENTRAL TURKEY",
        }
        fields.update(overrides)
        return QuakeEvent(**fields)

    return _make
