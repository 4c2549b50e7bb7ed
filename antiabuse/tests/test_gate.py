"""Tests for the 429 rendering and the Kafka event handler."""

import pytest

from antiabuse.engine import REASON_SCORE_EXCEEDED, CheckResult
from antiabuse.gate import decision_response
from antiabuse.main import handle_event


class TestDecisionResponse:
    def test_allowed_is_plain_200(self):
        assert decision_response(CheckResult(allowed=True, abuse_score=30)) == (200, {}, None)

    def test_blocked_is_429_with_retry_after(self):
        result = CheckResult(allowed=False, reason=REASON_SCORE_EXCEEDED,
                             abuse_score=92, penalty_type="temp_ban", retry_after=1800)
        status, headers, body = decision_response(result)
        assert status == 429
        assert headers == {"Retry-After": "1800"}
        assert body == {
            "error": {
                "message": ("Request blocked: Abuse score exceeded action threshold. "
                            "Retry after 1800 seconds."),
                "type": "abuse_detection",
                "code": "temp_ban",
            }
        }


class TestHandleEvent:
    def test_allowed_event(self, services):
        decision = handle_event(services.detector, {
            "request_id": "req_abc",
            "token_id": 7,
            "user_id": 1007,
            "group": "default",
            "model": "gpt-4o",
            "content": "Write a SQL query that returns the top five customers.",
        })
        assert decision["request_id"] == "req_abc"
        assert decision["token_id"] == 7
        assert decision["decision"]["allowed"] is True
        assert decision["http"] == {"status": 200, "headers": {}, "body": None}

    def test_penalized_event(self, services):
        services.penalty_manager.apply_penalty(7, "perm_ban", "fraud", 100)
        decision = handle_event(services.detector, {
            "request_id": "req_def", "token_id": "7", "model": "gpt-4o", "content": "hi",
        })
        assert decision["token_id"] == 7
        assert decision["decision"]["allowed"] is False
        assert decision["http"]["status"] == 429
        assert decision["http"]["body"]["error"]["code"] == "perm_ban"
        assert int(decision["http"]["headers"]["Retry-After"]) > 0

    def test_event_without_token_skipped(self, services):
        assert handle_event(services.detector, {"request_id": "anon", "model": "gpt-4o"}) is None

    def test_malformed_token_raises(self, services):
        with pytest.raises(ValueError):
            handle_event(services.detector, {"token_id": "not-a-number"})
