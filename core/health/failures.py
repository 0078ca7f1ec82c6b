"""Retry and backoff decisions for failed scrape attempts.

Everything here is a pure computation over ``(attempts, FailureKind)``, kept
apart from the worker's I/O so it can be tested on its own.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from core.domain import FailureKind, ScrapeTask


@dataclass(frozen=True)
class RetryPolicy:
    base_seconds: float = 60.0
    max_seconds: float = 3600.0
    # Rate limiting and bot challenges back off longer than ordinary errors.
    rate_limit_multiplier: float = 4.0
    blocked_base_seconds: float = 900.0
    long_max_seconds: float = 4 * 3600.0
    # A changed page layout usually fails the same way again.
    max_extraction_attempts: int = 2
    # How many 429s may be refunded before they start counting as attempts.
    max_rate_limit_deferrals: int = 3


DEFAULT_POLICY = RetryPolicy()


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    scheduled_for: Optional[datetime] = None
    refund_attempt: bool = False
    reason: str = ""


def backoff_seconds(attempts: int, kind: FailureKind, policy: RetryPolicy = DEFAULT_POLICY) -> float:
    """Delay before the next attempt after ``attempts`` attempts have run."""
    exponent = max(attempts - 1, 0)
    if kind == FailureKind.RATE_LIMITED:
        delay = policy.base_seconds * policy.rate_limit_multiplier * (2 ** exponent)
        return min(delay, policy.long_max_seconds)
    if kind == FailureKind.BLOCKED:
        return min(policy.blocked_base_seconds * (2 ** exponent), policy.long_max_seconds)
    return min(policy.base_seconds * (2 ** exponent), policy.max_seconds)


def next_attempt_at(
    attempts: int,
    kind: FailureKind,
    now: datetime,
    policy: RetryPolicy = DEFAULT_POLICY,
) -> Optional[datetime]:
    """When the next attempt may run, or None if this kind is never retried."""
    if kind == FailureKind.VALIDATION_REJECTED:
        return None
    return now + timedelta(seconds=backoff_seconds(attempts, kind, policy))


def attempt_limit(task: ScrapeTask, kind: FailureKind, policy: RetryPolicy = DEFAULT_POLICY) -> int:
    if kind == FailureKind.EXTRACTION_FAILURE:
        return min(task.max_attempts, policy.max_extraction_attempts)
    return task.max_attempts


def decide_retry(
    task: ScrapeTask,
    kind: FailureKind,
    now: datetime,
    policy: RetryPolicy = DEFAULT_POLICY,
) -> RetryDecision:
    """Decide whether a failed task goes back to pending, and when.

    ``task.attempts`` already counts the attempt that just failed.
    """
    if kind == FailureKind.VALIDATION_REJECTED:
        return RetryDecision(retry=False, reason="validation rejected; wait for next interval")

    refund = kind == FailureKind.RATE_LIMITED and task.rate_limit_deferrals < policy.max_rate_limit_deferrals
    charged = task.attempts - 1 if refund else task.attempts
    limit = attempt_limit(task, kind, policy)
    if charged >= limit:
        return RetryDecision(retry=False, reason=f"{kind.value}: attempts exhausted ({charged}/{limit})")

    if refund:
        when = next_attempt_at(task.rate_limit_deferrals + 1, kind, now, policy)
    else:
        when = next_attempt_at(task.attempts, kind, now, policy)
    return RetryDecision(retry=True, scheduled_for=when, refund_attempt=refund, reason=kind.value)
