"""Anti-abuse engine — decides whether a gateway request goes through.

Pure business logic, no transport.  The Kafka gating service (or any HTTP
middleware) calls check_request() once per request and turns a blocked
result into a 429.

Per request, in order:
  1. Disabled?     → allow, touch nothing
  2. Record        → model-switch event, probe-content event if applicable
  3. Whitelisted?  → allow (signals were still recorded)
  4. Penalized?    → block until the existing penalty expires
  5. Score         → over the action threshold: apply a penalty and block
  6. Warn          → over the warning threshold: log, allow
  7. Allow         → with the current score attached

At most: two event writes, one penalty read, two window reads, one penalty
write.  A StorageError from step 4 onward allows the request.
"""

import logging
import math
import time
from dataclasses import asdict, dataclass

from antiabuse import metrics
from antiabuse.exceptions import InvalidPenaltyError, StorageError
from antiabuse.penalties import PenaltyManager
from antiabuse.score import AbuseScoreCalculator, AbuseScoreResult
from antiabuse.settings import SecuritySettings, SettingsProvider
from antiabuse.signals import ModelSwitchTracker, TestContentDetector

logger = logging.getLogger(__name__)

REASON_WHITELISTED = "whitelisted"
REASON_SCORE_EXCEEDED = "Abuse score exceeded action threshold"


@dataclass(frozen=True)
class CheckResult:
    allowed: bool
    reason: str = ""
    abuse_score: int = 0
    penalty_type: str = ""
    retry_after: int = 0  # seconds

    def to_dict(self) -> dict:
        return asdict(self)


def _retry_after(expires_at: float, now: float) -> int:
    return max(0, math.ceil(expires_at - now))


class AbuseDetector:

    def __init__(self, settings: SettingsProvider,
                 model_switch_tracker: ModelSwitchTracker,
                 test_content_detector: TestContentDetector,
                 score_calculator: AbuseScoreCalculator,
                 penalty_manager: PenaltyManager):
        self.settings = settings
        self.model_switch_tracker = model_switch_tracker
        self.test_content_detector = test_content_detector
        self.score_calculator = score_calculator
        self.penalty_manager = penalty_manager

    def check_request(self, token_id: int, user_id: int, group: str,
                      model_name: str, content: str = "") -> CheckResult:
        settings = self.settings.current()
        if not settings.enable_anti_abuse:
            metrics.decisions_total.labels(outcome="disabled").inc()
            return CheckResult(allowed=True)

        with metrics.check_latency.time():
            result, outcome = self._decide(
                settings, token_id, user_id, group, model_name, content,
            )
        metrics.decisions_total.labels(outcome=outcome).inc()
        return result

    def _decide(self, settings: SecuritySettings, token_id, user_id, group,
                model_name, content) -> tuple[CheckResult, str]:
        now = time.time()
        whitelisted = self.is_whitelisted(user_id, group, settings)

        if not whitelisted or settings.record_whitelisted_signals:
            try:
                self.record_request(token_id, model_name, content, settings, now)
            except StorageError as e:
                metrics.storage_errors_total.labels(operation="record").inc()
                logger.warning("signal recording failed token=%s: %s", token_id, e)

        if whitelisted:
            return CheckResult(allowed=True, reason=REASON_WHITELISTED), "whitelisted"

        try:
            status = self.penalty_manager.check_penalty(token_id, now)
        except StorageError as e:
            metrics.storage_errors_total.labels(operation="penalty_check").inc()
            logger.warning("penalty check failed, allowing token=%s: %s", token_id, e)
            return CheckResult(allowed=True), "fail_open"

        if status.is_penalized:
            return CheckResult(
                allowed=False,
                reason=status.reason,
                abuse_score=status.abuse_score,
                penalty_type=status.penalty_type.value,
                retry_after=_retry_after(status.expires_at, now),
            ), "penalized"

        try:
            score = self.score_calculator.calculate_score(token_id, settings, now)
        except StorageError as e:
            metrics.storage_errors_total.labels(operation="score").inc()
            logger.warning("score calculation failed, allowing token=%s: %s", token_id, e)
            return CheckResult(allowed=True), "fail_open"

        metrics.abuse_scores.observe(score.total_score)

        if score.exceeds_action:
            try:
                state = self.penalty_manager.apply_penalty(
                    token_id,
                    settings.penalty_type,
                    REASON_SCORE_EXCEEDED,
                    score.total_score,
                    settings.temp_ban_duration_minutes,
                    user_id=user_id,
                    now=now,
                )
            except (StorageError, InvalidPenaltyError) as e:
                metrics.storage_errors_total.labels(operation="penalty_apply").inc()
                logger.warning(
                    "penalty apply failed, allowing token=%s score=%d: %s",
                    token_id, score.total_score, e,
                )
                return CheckResult(allowed=True, abuse_score=score.total_score), "fail_open"

            logger.warning(
                "token=%s user=%s penalized type=%s score=%d (switch=%d probe=%d)",
                token_id, user_id, state.penalty_type.value, score.total_score,
                score.model_switch_count, score.test_content_count,
            )
            return CheckResult(
                allowed=False,
                reason=REASON_SCORE_EXCEEDED,
                abuse_score=score.total_score,
                penalty_type=state.penalty_type.value,
                # Time to the stored expiry, so a perm_ban reports about a year
                # rather than duration_minutes * 60.
                retry_after=_retry_after(state.expires_at, now),
            ), "new_penalty"

        if score.exceeds_warning:
            logger.warning(
                "token=%s abuse score %d approaching action threshold %d",
                token_id, score.total_score, settings.abuse_score_action_threshold,
            )
            return CheckResult(allowed=True, abuse_score=score.total_score), "warning"

        return CheckResult(allowed=True, abuse_score=score.total_score), "allowed"

    def record_request(self, token_id: int, model_name: str, content: str,
                       settings: SecuritySettings | None = None,
                       now: float | None = None) -> None:
        """Feed both signals. Raises StorageError; check_request absorbs it."""
        settings = settings or self.settings.current()
        if model_name:
            self.model_switch_tracker.record_model_request(token_id, model_name, now)
        if self.test_content_detector.is_test_content(content, settings):
            metrics.test_content_total.inc()
            self.test_content_detector.record_test_content(token_id, now)

    def get_abuse_score(self, token_id: int) -> AbuseScoreResult:
        """Admin view of a token's score. StorageError propagates."""
        return self.score_calculator.calculate_score(token_id, self.settings.current())

    def is_whitelisted(self, user_id: int, group: str,
                       settings: SecuritySettings | None = None) -> bool:
        settings = settings or self.settings.current()
        return settings.is_user_whitelisted(user_id) or settings.is_group_whitelisted(group)
