"""Tests for SlidingWindow — inclusive range queries, eviction, drift guard."""

import time
from unittest.mock import patch

from antiabuse.sliding_window import SlidingWindow, _MAX_DRIFT_SECONDS


class TestBetween:
    def test_range_is_inclusive_at_both_ends(self):
        w = SlidingWindow(600)
        now = time.time()
        w.add(now - 300, "start")
        w.add(now - 100, "middle")
        w.add(now, "end")
        assert [p for _, p in w.between(now - 300, now)] == ["start", "middle", "end"]

    def test_entries_outside_range_are_excluded(self):
        w = SlidingWindow(600)
        now = time.time()
        w.add(now - 300.001, "before")
        w.add(now - 10, "inside")
        assert [p for _, p in w.between(now - 300, now - 1)] == ["inside"]

    def test_results_are_oldest_first(self):
        w = SlidingWindow(600)
        now = time.time()
        w.add(now - 1, "c")
        w.add(now - 3, "a")
        w.add(now - 2, "b")
        assert [p for _, p in w.between(now - 10, now)] == ["a", "b", "c"]

    def test_same_timestamp_entries_all_returned(self):
        w = SlidingWindow(600)
        now = time.time()
        w.add(now, "x")
        w.add(now, "y")
        assert len(w.between(now, now)) == 2

    def test_empty_window(self):
        w = SlidingWindow(60)
        assert w.between(0, time.time()) == []


class TestEviction:
    def test_event_exactly_at_horizon_is_kept(self):
        """An entry exactly max_age old is accepted and survives eviction."""
        w = SlidingWindow(60)
        now = time.time()
        with patch("antiabuse.sliding_window.time") as mock_time:
            mock_time.time.return_value = now
            assert w.add(now - 60, "boundary") is True
        assert w.evict(now) == 0
        assert len(w) == 1

    def test_evict_returns_count_removed(self):
        w = SlidingWindow(10)
        now = time.time()
        w.add(now - 8, "a")
        w.add(now - 5, "b")
        w.add(now, "c")
        assert w.evict(now + 6) == 2
        assert [p for _, p in w.between(0, now + 6)] == ["c"]

    def test_progressive_eviction_on_add(self):
        w = SlidingWindow(10)
        now = time.time()

        with patch("antiabuse.sliding_window.time") as mock_time:
            mock_time.time.return_value = now
            w.add(now, "a")

            mock_time.time.return_value = now + 5
            w.add(now + 5, "b")

            # "a" is 12s old by now
            mock_time.time.return_value = now + 12
            w.add(now + 12, "c")

        ids = [p for _, p in w.between(0, now + 12)]
        assert ids == ["b", "c"]


class TestDriftGuard:
    def test_event_in_past_is_accepted(self):
        w = SlidingWindow(60)
        assert w.add(time.time() - 30, "past") is True
        assert len(w) == 1

    def test_event_slightly_in_future_is_accepted(self):
        w = SlidingWindow(60)
        assert w.add(time.time() + 1, "near_future") is True

    def test_event_beyond_drift_limit_is_rejected(self):
        w = SlidingWindow(60)
        assert w.add(time.time() + _MAX_DRIFT_SECONDS + 1, "bad") is False
        assert len(w) == 0

    def test_already_expired_event_is_rejected(self):
        w = SlidingWindow(900)
        now = time.time()
        w.add(now - 899, "valid")
        assert w.add(now - 901, "too_old") is False
        assert len(w) == 1


class TestClear:
    def test_clear_empties_window(self):
        w = SlidingWindow(60)
        now = time.time()
        w.add(now, "1")
        w.add(now, "2")
        w.clear()
        assert len(w) == 0
        assert w.between(0, now) == []
