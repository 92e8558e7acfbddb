"""Tests for the Broadcaster filter policy and subscriber fan-out."""

import asyncio
import json
from unittest.mock import MagicMock

import pytest

from quake_feed.broadcaster import Broadcaster, SSEMessage, Subscription, SubscriptionClosed, in_region
from quake_feed.models import ConnectionStatus
from quake_feed.settings import OverlaySettings


def events_of(subscription: Subscription) -> list[str]:
    return [m.event for m in subscription.pending()]


class TestSubscription:
    """Test the per-subscriber queue."""

    def test_push_and_pending(self):
        sub = Subscription(max_queue_size=5)
        sub.push(SSEMessage("status", "OPEN"))
        assert sub.pending() == [SSEMessage("status", "OPEN")]
        assert sub.pending() == []

    def test_push_after_close_raises(self):
        sub = Subscription()
        sub.close()
        with pytest.raises(SubscriptionClosed):
            sub.push(SSEMessage("ping", "1"))

    def test_full_queue_raises(self):
        sub = Subscription(max_queue_size=1)
        sub.push(SSEMessage("ping", "1"))
        with pytest.raises(asyncio.QueueFull):
            sub.push(SSEMessage("ping", "2"))

    @pytest.mark.asyncio
    async def test_get_returns_none_after_close(self):
        sub = Subscription(max_queue_size=1)
        sub.push(SSEMessage("ping", "1"))
        sub.close()

        assert sub.closed
        assert await sub.get() is None
        assert await sub.get() is None

    def test_ids_unique(self):
        assert Subscription().id != Subscription().id


class TestInitialSnapshot:
    """Test messages pushed on subscribe."""

    def test_without_event(self, broadcaster):
        sub = broadcaster.subscribe()
        messages = sub.pending()

        assert [m.event for m in messages] == ["settings", "status"]
        assert json.loads(messages[0].data)["minMag"] == 3.0
        assert messages[1].data == "CLOSED"
        assert broadcaster.subscriber_count == 1

    def test_with_latest_event(self, broadcaster, make_event):
        broadcaster.handle_status(ConnectionStatus.OPEN)
        broadcaster.handle_event(make_event())

        sub = broadcaster.subscribe()
        messages = sub.pending()

        assert [m.event for m in messages] == ["settings", "status", "earthquake"]
        assert messages[1].data == "OPEN"
        assert json.loads(messages[2].data)["unid"] == "20240206_0000017"

    def test_snapshot_failure_keeps_subscriber(self, settings_store, make_event):
        broadcaster = Broadcaster(settings_store, keepalive_interval=0, subscriber_queue_size=2)
        broadcaster.handle_event(make_event())

        sub = broadcaster.subscribe()

        assert events_of(sub) == ["settings", "status"]
        assert broadcaster.subscriber_count == 1


class TestFilterPolicy:
    """Test magnitude, region and enable switch."""

    def test_below_threshold_filtered(self, broadcaster, make_event):
        sub = broadcaster.subscribe()
        sub.pending()

        assert broadcaster.handle_event(make_event(magnitude=2.9)) is False
        assert sub.pending() == []
        assert broadcaster.latest_event is None
        assert broadcaster.get_stats()["events_filtered"] == 1

    def test_lower_threshold_passes(self, broadcaster, settings_store, make_event):
        settings_store.update(OverlaySettings(min_mag=2.5))
        sub = broadcaster.subscribe()
        sub.pending()

        assert broadcaster.handle_event(make_event(magnitude=2.9)) is True
        assert events_of(sub) == ["earthquake"]
        assert broadcaster.latest_event.magnitude == 2.9

    def test_threshold_inclusive(self, broadcaster, make_event):
        assert broadcaster.should_emit(make_event(magnitude=3.0))

    @pytest.mark.parametrize(
        "latitude,longitude",
        [(50.0, 30.0), (34.99, 30.0), (43.01, 30.0), (38.0, 24.9), (38.0, 45.1)],
    )
    def test_outside_region_filtered(self, broadcaster, make_event, latitude, longitude):
        assert not broadcaster.should_emit(make_event(latitude=latitude, longitude=longitude))

    def test_region_bounds_inclusive(self):
        assert in_region(35.0, 25.0)
        assert in_region(43.0, 45.0)

    def test_stream_disabled(self, broadcaster, settings_store, make_event):
        settings_store.update(OverlaySettings(stream_enabled=False))
        assert not broadcaster.should_emit(make_event(magnitude=7.0))

    def test_invalid_event_filtered(self, broadcaster, make_event):
        assert not broadcaster.should_emit(None)
        assert not broadcaster.should_emit(make_event(id=""))

    def test_latest_only_updated_on_forward(self, broadcaster, make_event):
        broadcaster.handle_event(make_event(id="kept"))
        broadcaster.handle_event(make_event(id="dropped", magnitude=1.0))
        assert broadcaster.latest_event.id == "kept"


class TestManualPublish:
    """Test operator-injected events."""

    def test_bypasses_filter(self, broadcaster, make_event):
        sub = broadcaster.subscribe()
        sub.pending()

        assert broadcaster.publish_manual(make_event(magnitude=1.0, latitude=60.0), respect_filters=False)
        assert events_of(sub) == ["earthquake"]
        assert broadcaster.latest_event.magnitude == 1.0

    def test_respects_filter_when_asked(self, broadcaster, make_event):
        assert not broadcaster.publish_manual(make_event(magnitude=1.0), respect_filters=True)
        assert broadcaster.latest_event is None

    def test_none_event(self, broadcaster):
        assert broadcaster.publish_manual(None, respect_filters=False) is False


class TestFanOut:
    """Test subscriber delivery and removal."""

    def test_status_pushed_to_all(self, broadcaster):
        subs = [broadcaster.subscribe() for _ in range(3)]
        for sub in subs:
            sub.pending()

        broadcaster.handle_status(ConnectionStatus.LOST)

        for sub in subs:
            assert sub.pending() == [SSEMessage("status", "LOST")]
        assert broadcaster.status == ConnectionStatus.LOST

    def test_failing_subscriber_removed(self, broadcaster, make_event):
        healthy = broadcaster.subscribe()
        failing = broadcaster.subscribe()
        healthy.pending()
        failing.push = MagicMock(side_effect=RuntimeError("socket gone"))

        broadcaster.handle_event(make_event())

        assert events_of(healthy) == ["earthquake"]
        assert broadcaster.subscriber_count == 1
        assert failing.closed
        assert broadcaster.get_stats()["push_failures"] == 1

    def test_full_subscriber_removed(self, settings_store):
        broadcaster = Broadcaster(settings_store, keepalive_interval=0, subscriber_queue_size=2)
        sub = broadcaster.subscribe()

        broadcaster.handle_status(ConnectionStatus.OPEN)

        assert broadcaster.subscriber_count == 0
        assert sub.closed

    def test_unsubscribe_idempotent(self, broadcaster):
        sub = broadcaster.subscribe()
        broadcaster.unsubscribe(sub)
        broadcaster.unsubscribe(sub)

        assert broadcaster.subscriber_count == 0
        assert broadcaster.get_stats()["clients_disconnected"] == 1

    def test_settings_change_pushed(self, broadcaster, settings_store):
        sub = broadcaster.subscribe()
        sub.pending()

        settings_store.update(OverlaySettings(theme="light"))
        broadcaster.on_settings_change()

        messages = sub.pending()
        assert [m.event for m in messages] == ["settings"]
        assert json.loads(messages[0].data)["theme"] == "light"

    def test_keepalive(self, broadcaster):
        sub = broadcaster.subscribe()
        sub.pending()

        broadcaster.send_keepalive()

        messages = sub.pending()
        assert messages[0].event == "ping"
        assert messages[0].data.isdigit()

    @pytest.mark.asyncio
    async def test_stop_completes_subscriptions(self, broadcaster):
        subs = [broadcaster.subscribe() for _ in range(2)]

        broadcaster.stop()

        for sub in subs:
            assert len(sub.pending()) == 2
            assert await sub.get() is None
        assert broadcaster.subscriber_count == 0


class TestBroadcastLoop:
    """Test the queued hand-over from the feed client."""

    @pytest.mark.asyncio
    async def test_queued_updates_delivered_in_order(self, broadcaster, make_event):
        broadcaster.start()
        await broadcaster.start_broadcast_loop()
        sub = broadcaster.subscribe()
        sub.pending()

        broadcaster.publish_status(ConnectionStatus.OPEN)
        broadcaster.publish_event(make_event())
        for _ in range(10):
            await asyncio.sleep(0)

        assert events_of(sub) == ["status", "earthquake"]
        broadcaster.stop()
        assert not broadcaster.is_running

    def test_publish_before_start_ignored(self, broadcaster, make_event):
        broadcaster.publish_event(make_event())
        assert broadcaster.latest_event is None

    @pytest.mark.asyncio
    async def test_queue_full_drops(self, settings_store, make_event):
        broadcaster = Broadcaster(settings_store, keepalive_interval=0, max_queue_size=1)
        broadcaster.start()

        broadcaster.publish_event(make_event(id="a"))
        broadcaster.publish_event(make_event(id="b"))

        assert broadcaster.get_stats()["events_dropped"] == 1

    @pytest.mark.asyncio
    async def test_keepalive_loop(self, settings_store):
        broadcaster = Broadcaster(settings_store, keepalive_interval=0.01)
        broadcaster.start()
        await broadcaster.start_broadcast_loop()
        sub = broadcaster.subscribe()
        sub.pending()

        await asyncio.sleep(0.1)

        assert "ping" in events_of(sub)
        broadcaster.stop()
