"""Model switching — how many different models a token asks for.

Legitimate integrations pin one or two models.  A token that walks the
whole catalogue in a few minutes is usually a reseller probing which
upstream channels answer, or a script fingerprinting the gateway.
"""

import time

from antiabuse.backends import MODEL_SWITCH_STREAM
from antiabuse.models import ModelRequestEvent
from antiabuse.signals import SignalRecorder


class ModelSwitchTracker(SignalRecorder):
    stream = MODEL_SWITCH_STREAM

    def record_model_request(self, token_id: int, model_name: str,
                             now: float | None = None) -> ModelRequestEvent:
        event = ModelRequestEvent(
            token_id=token_id,
            model_name=model_name,
            timestamp=time.time() if now is None else now,
        )
        self._append(token_id, event.timestamp, event.to_payload())
        return event

    def get_model_history(self, token_id: int, window_minutes: int,
                          now: float | None = None) -> list[ModelRequestEvent]:
        """Requests inside the window, oldest first."""
        return [ModelRequestEvent.from_payload(p)
                for p in self._window(token_id, window_minutes, now)]

    def get_distinct_model_count(self, token_id: int, window_minutes: int,
                                 now: float | None = None) -> int:
        history = self.get_model_history(token_id, window_minutes, now)
        return len({e.model_name for e in history})
