"""In-process backend — dicts of sliding windows behind reader/writer locks.

Used when no Redis URL is configured: a single gateway replica, or tests.
Working state is lost on restart; the audit trail lives in the relational
store and is unaffected.

Two logical stores, each with its own lock:
  events:    dict[stream, dict[token_id, SlidingWindow]]
  penalties: dict[token_id, PenaltyState]

Expired events are trimmed when their window is next written to.  Expired
penalties are left in place (CheckPenalty compares against the clock) until
sweep() runs, either on demand or from the optional sweeper thread.
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from typing import Iterator, Optional

from antiabuse.backends import EVENT_RETENTION_SECONDS, STREAMS, Backend
from antiabuse.exceptions import StorageError
from antiabuse.models import PenaltyState
from antiabuse.sliding_window import SlidingWindow

logger = logging.getLogger(__name__)


class ReadWriteLock:
    """Many readers or one writer.  Writers are preferred once waiting, so a
    steady stream of window queries can't starve event appends."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    def _wait(self, predicate, timeout):
        if not self._cond.wait_for(predicate, timeout=timeout):
            raise StorageError(f"lock not acquired within {timeout}s")

    @contextmanager
    def read(self, timeout: float | None = None):
        with self._cond:
            self._wait(lambda: not self._writer and not self._writers_waiting,
                       timeout)
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextmanager
    def write(self, timeout: float | None = None):
        with self._cond:
            self._writers_waiting += 1
            try:
                self._wait(lambda: not self._writer and not self._readers,
                           timeout)
            finally:
                self._writers_waiting -= 1
                if not self._writers_waiting:
                    self._cond.notify_all()
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class MemoryBackend(Backend):
    name = "memory"

    def __init__(self, lock_timeout: float | None = 0.5,
                 retention_seconds: float = EVENT_RETENTION_SECONDS):
        self.lock_timeout = lock_timeout
        self.retention_seconds = retention_seconds

        self._events_lock = ReadWriteLock()
        self._events: dict[str, dict[int, SlidingWindow]] = {s: {} for s in STREAMS}

        self._penalties_lock = ReadWriteLock()
        self._penalties: dict[int, PenaltyState] = {}

        self._sweeper: Optional[threading.Thread] = None
        self._stop = threading.Event()

    # -- events -----------------------------------------------------------

    def _streams(self, stream: str) -> dict[int, SlidingWindow]:
        try:
            return self._events[stream]
        except KeyError:
            raise StorageError(f"unknown event stream: {stream}") from None

    def add_event(self, stream, token_id, timestamp, payload):
        windows = self._streams(stream)
        with self._events_lock.write(self.lock_timeout):
            window = windows.get(token_id)
            if window is None:
                window = windows[token_id] = SlidingWindow(self.retention_seconds)
            window.add(timestamp, payload)

    def events_between(self, stream, token_id, start, end):
        windows = self._streams(stream)
        with self._events_lock.read(self.lock_timeout):
            window = windows.get(token_id)
            if window is None:
                return []
            return window.between(start, end)

    # -- penalties --------------------------------------------------------

    def set_penalty(self, state, ttl_seconds):
        with self._penalties_lock.write(self.lock_timeout):
            self._penalties[state.token_id] = state

    def get_penalty(self, token_id):
        with self._penalties_lock.read(self.lock_timeout):
            return self._penalties.get(token_id)

    def delete_penalty(self, token_id):
        with self._penalties_lock.write(self.lock_timeout):
            return self._penalties.pop(token_id, None) is not None

    def iter_penalties(self) -> Iterator[PenaltyState]:
        with self._penalties_lock.read(self.lock_timeout):
            snapshot = list(self._penalties.values())
        return iter(snapshot)

    # -- housekeeping -----------------------------------------------------

    def sweep(self, now=None):
        now = time.time() if now is None else now
        removed = 0

        with self._events_lock.write(self.lock_timeout):
            for windows in self._events.values():
                for token_id in list(windows):
                    window = windows[token_id]
                    removed += window.evict(now)
                    if not len(window):
                        del windows[token_id]

        with self._penalties_lock.write(self.lock_timeout):
            for token_id in [t for t, s in self._penalties.items() if s.is_expired(now)]:
                del self._penalties[token_id]
                removed += 1

        return removed

    def start_sweeper(self, interval_seconds: float = 60.0) -> threading.Thread:
        """Run sweep() every interval on a daemon thread until close()."""
        if self._sweeper is not None and self._sweeper.is_alive():
            return self._sweeper

        def _loop():
            while not self._stop.wait(interval_seconds):
                try:
                    removed = self.sweep()
                except StorageError as e:
                    logger.warning("memory backend sweep skipped: %s", e)
                    continue
                if removed:
                    logger.debug("memory backend sweep removed %d entries", removed)

        self._stop.clear()
        self._sweeper = threading.Thread(target=_loop, name="antiabuse-sweeper",
                                         daemon=True)
        self._sweeper.start()
        return self._sweeper

    def close(self):
        self._stop.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=5)
            self._sweeper = None
