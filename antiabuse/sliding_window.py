"""Sliding window for per-token event retention.

The in-process backend keeps one of these per (stream, token) pair.
Entries stay sorted by timestamp so a window query is two bisects and a
slice; eviction trims the head once entries fall out of the retention
horizon.  The Redis backend gets the same semantics from a sorted set.
"""

import time
from bisect import bisect_left, bisect_right, insort

# Events with timestamps more than this many seconds in the future are
# dropped, so a bogus clock can't pin an entry in every future window.
_MAX_DRIFT_SECONDS = 5


class SlidingWindow:
    __slots__ = ("max_age", "_buf")

    def __init__(self, max_age_seconds: float):
        self.max_age = max_age_seconds
        self._buf: list[tuple[float, str]] = []

    def add(self, timestamp: float, payload: str) -> bool:
        """Insert an entry. Returns False (and drops it) if the timestamp is
        bogus or already outside the retention horizon."""
        now = time.time()
        if timestamp > now + _MAX_DRIFT_SECONDS:
            return False
        if timestamp < now - self.max_age:
            return False
        self.evict(now)
        insort(self._buf, (timestamp, payload))
        return True

    def between(self, start: float, end: float) -> list[tuple[float, str]]:
        """Entries with start <= timestamp <= end, oldest first."""
        lo = bisect_left(self._buf, (start,))
        # (end, chr(0x10FFFF)) sorts after every (end, payload) pair.
        hi = bisect_right(self._buf, (end, "\U0010ffff"))
        return self._buf[lo:hi]

    def evict(self, now: float) -> int:
        """Drop entries older than the horizon; returns how many went."""
        cutoff = now - self.max_age
        idx = bisect_left(self._buf, (cutoff,))
        if idx:
            del self._buf[:idx]
        return idx

    def clear(self) -> None:
        self._buf.clear()

    def __len__(self) -> int:
        return len(self._buf)
