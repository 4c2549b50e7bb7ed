"""Composite abuse score — two capped signals summed into 0–100.

Each signal scales linearly against its own threshold and is capped at 50,
so neither one can push a token over the action threshold alone when that
threshold sits above 50.  Thresholds live in settings; retuning needs no
code change.
"""

from dataclasses import asdict, dataclass

from antiabuse.settings import SecuritySettings
from antiabuse.signals import ModelSwitchTracker, TestContentDetector

SIGNAL_MAX_SCORE = 50


@dataclass(frozen=True)
class AbuseScoreResult:
    total_score: int = 0
    model_switch_score: int = 0
    test_content_score: int = 0
    model_switch_count: int = 0
    test_content_count: int = 0
    exceeds_warning: bool = False
    exceeds_action: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


def signal_score(count: int, threshold: int) -> int:
    """50 * count / threshold, rounded half up, capped at 50. Zero when the
    signal is switched off (threshold <= 0)."""
    if threshold <= 0 or count <= 0:
        return 0
    # Integer arithmetic: round-half-up of (50*count)/threshold.
    scaled = (2 * SIGNAL_MAX_SCORE * count + threshold) // (2 * threshold)
    return min(SIGNAL_MAX_SCORE, scaled)


class AbuseScoreCalculator:

    def __init__(self, model_switch_tracker: ModelSwitchTracker,
                 test_content_detector: TestContentDetector):
        self.model_switch_tracker = model_switch_tracker
        self.test_content_detector = test_content_detector

    def calculate_score(self, token_id: int, settings: SecuritySettings,
                        now: float | None = None) -> AbuseScoreResult:
        """Score a token from its current window counts.

        Two backend queries, one per signal.  StorageError propagates; the
        caller owns the fail-open decision.
        """
        model_switch_count = self.model_switch_tracker.get_distinct_model_count(
            token_id, settings.model_switch_window_minutes, now,
        )
        test_content_count = self.test_content_detector.get_test_content_count(
            token_id, settings.test_content_window_minutes, now,
        )

        ms_score = signal_score(model_switch_count, settings.model_switch_threshold)
        tc_score = signal_score(test_content_count, settings.test_content_threshold)
        total = ms_score + tc_score

        return AbuseScoreResult(
            total_score=total,
            model_switch_score=ms_score,
            test_content_score=tc_score,
            model_switch_count=model_switch_count,
            test_content_count=test_content_count,
            exceeds_warning=total >= settings.abuse_score_warning_threshold,
            exceeds_action=total >= settings.abuse_score_action_threshold,
        )

    def is_abusive(self, token_id: int, settings: SecuritySettings) -> tuple[bool, AbuseScoreResult]:
        result = self.calculate_score(token_id, settings)
        return result.exceeds_action, result

    def is_warning(self, token_id: int, settings: SecuritySettings) -> tuple[bool, AbuseScoreResult]:
        """Warning band only: over the warning threshold, under the action one."""
        result = self.calculate_score(token_id, settings)
        return result.exceeds_warning and not result.exceeds_action, result
