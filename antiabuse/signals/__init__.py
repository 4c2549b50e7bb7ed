# Behavioural signals, one recorder per file.
#
# A recorder owns one event stream in the storage backend: it appends an
# event per observed request and answers "how many / which, over the last
# N minutes" for the score calculator.  The backend handles retention; a
# recorder only decides what an event is and how to count a window.


import time

from antiabuse.backends import Backend


class SignalRecorder:
    """Base recorder. Subclasses set ``stream`` and add their own API."""

    stream: str

    def __init__(self, backend: Backend):
        self.backend = backend

    def _append(self, token_id: int, timestamp: float, payload: str) -> None:
        self.backend.add_event(self.stream, token_id, timestamp, payload)

    def _window(self, token_id: int, window_minutes: int,
                now: float | None = None) -> list[str]:
        """Payloads with timestamp in [now - window, now], oldest first.

        A non-positive window is empty rather than an error: it is what a
        half-configured deployment sends, and it should score zero.
        """
        if window_minutes <= 0:
            return []
        now = time.time() if now is None else now
        start = now - window_minutes * 60
        return [p for _, p in self.backend.events_between(self.stream, token_id, start, now)]


from antiabuse.signals.model_switch import ModelSwitchTracker
from antiabuse.signals.test_content import TestContentDetector
