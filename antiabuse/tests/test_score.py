"""Tests for the composite abuse score."""

import time

import pytest

from antiabuse.score import SIGNAL_MAX_SCORE, AbuseScoreCalculator, signal_score
from antiabuse.settings import SecuritySettings
from antiabuse.signals import ModelSwitchTracker, TestContentDetector


class TestSignalScore:
    @pytest.mark.parametrize("count,threshold,expected", [
        (0, 10, 0),
        (1, 10, 5),
        (5, 10, 25),
        (10, 10, 50),
        (30, 10, 50),
        (1, 20, 3),   # 2.5 rounds half up
        (3, 20, 8),   # 7.5 rounds half up
        (7, 20, 18),  # 17.5 rounds half up
    ])
    def test_linear_rounded_and_capped(self, count, threshold, expected):
        assert signal_score(count, threshold) == expected

    @pytest.mark.parametrize("threshold", [0, -5])
    def test_disabled_signal_scores_zero(self, threshold):
        assert signal_score(100, threshold) == 0

    def test_never_exceeds_cap(self):
        for count in range(0, 200, 7):
            assert 0 <= signal_score(count, 3) <= SIGNAL_MAX_SCORE


class TestAbuseScoreCalculator:
    @pytest.fixture(autouse=True)
    def _calculator(self, memory_backend):
        self.tracker = ModelSwitchTracker(memory_backend)
        self.detector = TestContentDetector(memory_backend)
        self.calc = AbuseScoreCalculator(self.tracker, self.detector)
        self.settings = SecuritySettings(enable_anti_abuse=True)
        self.now = time.time()

    def _switch(self, token_id, n):
        for i in range(n):
            self.tracker.record_model_request(token_id, f"model-{i}", self.now - 1)

    def _probe(self, token_id, n):
        for _ in range(n):
            self.detector.record_test_content(token_id, self.now - 1)

    def test_clean_token_scores_zero(self):
        result = self.calc.calculate_score(1, self.settings, self.now)
        assert result.total_score == 0
        assert not result.exceeds_warning
        assert not result.exceeds_action

    def test_total_is_sum_of_components(self):
        self._switch(1, 6)
        self._probe(1, 8)
        result = self.calc.calculate_score(1, self.settings, self.now)
        assert result.model_switch_count == 6
        assert result.test_content_count == 8
        assert result.model_switch_score == 30
        assert result.test_content_score == 20
        assert result.total_score == 50

    def test_flags_follow_thresholds(self):
        self._switch(1, 10)
        result = self.calc.calculate_score(1, self.settings, self.now)
        assert result.total_score == 50
        assert result.exceeds_warning  # >= 50
        assert not result.exceeds_action

    def test_one_signal_alone_cannot_reach_default_action(self):
        self._switch(1, 100)
        result = self.calc.calculate_score(1, self.settings, self.now)
        assert result.total_score == SIGNAL_MAX_SCORE
        assert not result.exceeds_action

    def test_both_signals_saturated(self):
        self._switch(1, 10)
        self._probe(1, 20)
        result = self.calc.calculate_score(1, self.settings, self.now)
        assert result.total_score == 100
        assert result.exceeds_action

    def test_thresholds_come_from_settings(self):
        self._switch(1, 2)
        strict = SecuritySettings(enable_anti_abuse=True, model_switch_threshold=2,
                                  abuse_score_action_threshold=50)
        result = self.calc.calculate_score(1, strict, self.now)
        assert result.model_switch_score == 50
        assert result.exceeds_action

    def test_is_abusive_and_is_warning(self):
        self._switch(1, 10)
        self._probe(1, 4)  # 50 + 10
        abusive, result = self.calc.is_abusive(1, self.settings)
        warning, _ = self.calc.is_warning(1, self.settings)
        assert result.total_score == 60
        assert not abusive
        assert warning

    def test_is_warning_false_once_abusive(self):
        self._switch(1, 10)
        self._probe(1, 20)
        warning, result = self.calc.is_warning(1, self.settings)
        assert result.exceeds_action
        assert not warning

    def test_to_dict(self):
        d = self.calc.calculate_score(1, self.settings, self.now).to_dict()
        assert set(d) == {
            "total_score", "model_switch_score", "test_content_score",
            "model_switch_count", "test_content_count",
            "exceeds_warning", "exceeds_action",
        }


class TestScoreProperties:
    @pytest.fixture(autouse=True)
    def _calculator(self, memory_backend):
        self.tracker = ModelSwitchTracker(memory_backend)
        self.calc = AbuseScoreCalculator(self.tracker, TestContentDetector(memory_backend))
        self.settings = SecuritySettings(enable_anti_abuse=True)

    @pytest.mark.parametrize("models", [11, 20])
    def test_model_switching_alone_stays_below_action(self, models):
        now = time.time()
        for i in range(models):
            self.tracker.record_model_request(1, f"model-{i}", now - 1)
        result = self.calc.calculate_score(1, self.settings, now)
        assert result.total_score == 50
        assert not result.exceeds_action

    def test_monotone_in_both_counts(self):
        previous = -1
        for count in range(0, 30):
            score = signal_score(count, 10) + signal_score(count, 20)
            assert 0 <= score <= 100
            assert score >= previous
            previous = score
