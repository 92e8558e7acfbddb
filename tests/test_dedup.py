"""Tests for SignatureTracker."""

from quake_feed.dedup import SignatureTracker


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestSignatureTracker:
    """Tests for bounded signature tracking."""

    def test_new_signature_accepted(self):
        tracker = SignatureTracker()
        assert tracker.add("a::t::4.5") is True
        assert "a::t::4.5" in tracker

    def test_duplicate_rejected(self):
        tracker = SignatureTracker()
        tracker.add("a::t::4.5")
        assert tracker.add("a::t::4.5") is False
        assert len(tracker) == 1

    def test_lru_eviction(self):
        """Oldest entries are evicted when the tracker is full."""
        tracker = SignatureTracker(max_size=3)

        for i in range(5):
            tracker.add(f"sig-{i}")

        assert len(tracker) == 3
        assert "sig-0" not in tracker
        assert "sig-1" not in tracker
        assert "sig-4" in tracker
        # Evicted signatures are accepted again
        assert tracker.add("sig-0") is True

    def test_age_eviction(self):
        clock = FakeClock()
        tracker = SignatureTracker(max_age_seconds=60, clock=clock)

        tracker.add("old")
        clock.now += 30
        tracker.add("newer")
        clock.now += 31

        assert "old" not in tracker
        assert "newer" in tracker
        assert tracker.add("old") is True

    def test_age_eviction_disabled(self):
        clock = FakeClock()
        tracker = SignatureTracker(max_age_seconds=0, clock=clock)

        tracker.add("sig")
        clock.now += 10**9

        assert tracker.add("sig") is False

    def test_clear(self):
        tracker = SignatureTracker()
        tracker.add("sig")
        tracker.clear()
        assert len(tracker) == 0

    def test_stats(self):
        tracker = SignatureTracker(max_size=1)
        tracker.add("a")
        tracker.add("b")

        stats = tracker.get_stats()
        assert stats["tracked"] == 1
        assert stats["evicted"] == 1
        assert stats["max_size"] == 1
