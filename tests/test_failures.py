"""Tests for retry and backoff decisions."""

from datetime import datetime, timedelta

import pytest

from core.domain import FailureKind, ScrapeTask, TaskSource
from core.health.failures import RetryPolicy, backoff_seconds, decide_retry, next_attempt_at

NOW = datetime(2025, 3, 1, 12, 0, 0)


def task(attempts, max_attempts=3, deferrals=0):
    t = ScrapeTask(
        listing_id="l1",
        retailer_id="static",
        priority=3,
        source=TaskSource.SCHEDULED,
        scheduled_for=NOW,
        max_attempts=max_attempts,
    )
    t.attempts = attempts
    t.rate_limit_deferrals = deferrals
    return t


class TestBackoff:
    @pytest.mark.parametrize("attempts,expected", [(1, 60), (2, 120), (3, 240), (7, 3600), (20, 3600)])
    def test_exponential_and_capped(self, attempts, expected):
        assert backoff_seconds(attempts, FailureKind.NETWORK_TIMEOUT) == expected

    def test_rate_limited_backs_off_longer(self):
        assert backoff_seconds(1, FailureKind.RATE_LIMITED) == 240
        assert backoff_seconds(1, FailureKind.RATE_LIMITED) > backoff_seconds(1, FailureKind.NETWORK_ERROR)

    def test_blocked_uses_long_base_and_cap(self):
        assert backoff_seconds(1, FailureKind.BLOCKED) == 900
        assert backoff_seconds(10, FailureKind.BLOCKED) == 4 * 3600

    def test_policy_is_configurable(self):
        policy = RetryPolicy(base_seconds=5, max_seconds=20)
        assert backoff_seconds(1, FailureKind.NETWORK_ERROR, policy) == 5
        assert backoff_seconds(4, FailureKind.NETWORK_ERROR, policy) == 20

    def test_validation_rejects_never_get_a_retry_time(self):
        assert next_attempt_at(1, FailureKind.VALIDATION_REJECTED, NOW) is None


class TestDecideRetry:
    def test_retries_with_backoff_while_attempts_remain(self):
        decision = decide_retry(task(attempts=1), FailureKind.NETWORK_TIMEOUT, NOW)

        assert decision.retry
        assert decision.scheduled_for == NOW + timedelta(seconds=60)
        assert not decision.refund_attempt

    def test_stops_after_max_attempts(self):
        decision = decide_retry(task(attempts=3), FailureKind.NETWORK_TIMEOUT, NOW)

        assert not decision.retry
        assert "exhausted" in decision.reason

    def test_extraction_failures_get_fewer_attempts(self):
        assert decide_retry(task(attempts=1), FailureKind.EXTRACTION_FAILURE, NOW).retry
        assert not decide_retry(task(attempts=2), FailureKind.EXTRACTION_FAILURE, NOW).retry

    def test_rate_limit_refunds_the_attempt(self):
        decision = decide_retry(task(attempts=3), FailureKind.RATE_LIMITED, NOW)

        assert decision.retry
        assert decision.refund_attempt
        assert decision.scheduled_for == NOW + timedelta(seconds=240)

    def test_rate_limit_refunds_are_bounded(self):
        decision = decide_retry(task(attempts=3, deferrals=3), FailureKind.RATE_LIMITED, NOW)

        assert not decision.retry

    def test_validation_rejected_is_not_retried(self):
        decision = decide_retry(task(attempts=1), FailureKind.VALIDATION_REJECTED, NOW)

        assert not decision.retry
        assert decision.scheduled_for is None
