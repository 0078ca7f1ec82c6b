"""Decides what gets scraped and when.

Four sources feed the queue:

- user requests (``submit_immediate``), priority 8-10, default 9
- newly discovered or matched listings (``submit_discovery``), priority 6
- periodic refreshes (``schedule_refreshes``), priority 3, raised to 4 for
  high-demand categories and 5 while the retailer runs a sale
- retries of failed attempts (``handle_failure``), same task, later time
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from core.domain import FailureKind, ProductListing, Retailer, TaskSource, utcnow
from core.exceptions import ListingNotFound
from core.health.failures import DEFAULT_POLICY, RetryDecision, RetryPolicy, decide_retry
from core.scheduler.queue import Lease, TaskQueue

logger = logging.getLogger(__name__)

IMMEDIATE_PRIORITY = 9
MIN_IMMEDIATE_PRIORITY = 8
MAX_IMMEDIATE_PRIORITY = 10
DISCOVERY_PRIORITY = 6
SALE_PRIORITY = 5
HIGH_DEMAND_PRIORITY = 4
SCHEDULED_PRIORITY = 3


class ScrapeScheduler:
    def __init__(
        self,
        queue: TaskQueue,
        persistence,
        config,
        policy: RetryPolicy = DEFAULT_POLICY,
        max_attempts: int = 3,
        monitor=None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.queue = queue
        self.persistence = persistence
        self.config = config
        self.policy = policy
        self.max_attempts = max_attempts
        self.monitor = monitor
        self._clock = clock

    def _enqueue(self, listing: ProductListing, priority: int, source: TaskSource,
                 scheduled_for: Optional[datetime] = None) -> str:
        now = self._clock()
        return self.queue.enqueue(
            listing.id,
            listing.retailer_id,
            priority,
            source,
            scheduled_for=scheduled_for or now,
            max_attempts=self.max_attempts,
            now=now,
        )

    def submit_immediate(self, listing_id: str, priority: int = IMMEDIATE_PRIORITY) -> str:
        """Queue a user-requested scrape ahead of everything routine.

        Raises:
            ValueError: priority outside 8-10
            ListingNotFound: unknown listing id
        """
        if not MIN_IMMEDIATE_PRIORITY <= priority <= MAX_IMMEDIATE_PRIORITY:
            raise ValueError(
                f"Immediate scrape priority must be between {MIN_IMMEDIATE_PRIORITY} "
                f"and {MAX_IMMEDIATE_PRIORITY}, got {priority}"
            )
        listing = self.persistence.get_listing(listing_id)
        if listing is None:
            raise ListingNotFound(listing_id)
        task_id = self._enqueue(listing, priority, TaskSource.USER_REQUEST)
        logger.info("Queued immediate scrape %s for listing %s", task_id, listing_id)
        return task_id

    def submit_discovery(self, listing: ProductListing) -> str:
        return self._enqueue(listing, DISCOVERY_PRIORITY, TaskSource.DISCOVERY)

    def refresh_interval(self, listing: ProductListing, retailer: Retailer) -> timedelta:
        """Sale interval beats high-demand beats default; the category wins over the retailer."""
        category = self.config.category(listing.category)
        if retailer.sale_period_active:
            hours = category.sale_period_interval_hours if category else retailer.sale_interval_hours
        elif category and category.high_demand:
            hours = category.high_demand_interval_hours
        elif category:
            hours = category.default_interval_hours
        else:
            hours = retailer.scrape_interval_hours
        return timedelta(hours=hours)

    def refresh_priority(self, listing: ProductListing, retailer: Retailer) -> int:
        if retailer.sale_period_active:
            return SALE_PRIORITY
        category = self.config.category(listing.category)
        if category and category.high_demand:
            return HIGH_DEMAND_PRIORITY
        return SCHEDULED_PRIORITY

    def next_refresh_at(self, listing: ProductListing, retailer: Retailer) -> datetime:
        if listing.last_scraped_at is None:
            return listing.created_at
        return listing.last_scraped_at + self.refresh_interval(listing, retailer)

    def schedule_refreshes(self, now: Optional[datetime] = None) -> int:
        """Queue every active listing whose refresh is due.

        Listings that already have a pending or running task are left alone.

        Returns:
            Number of tasks queued
        """
        now = now or self._clock()
        queued = 0
        for retailer in self.config.active_retailers():
            for listing in self.persistence.load_active_listings(retailer.id):
                if self.queue.is_queued(listing.id):
                    continue
                due = self.next_refresh_at(listing, retailer)
                if due > now:
                    continue
                self._enqueue(listing, self.refresh_priority(listing, retailer), TaskSource.SCHEDULED, due)
                queued += 1
        if queued:
            logger.info("Scheduled %d refresh tasks", queued)
        return queued

    def handle_failure(self, lease: Lease, kind: FailureKind, error: str) -> RetryDecision:
        """Retry, fail or reschedule a task whose attempt just failed."""
        now = self._clock()
        task = lease.task
        decision = decide_retry(task, kind, now, self.policy)

        if decision.retry:
            logger.info(
                "Task %s for %s failed (%s), retry at %s%s",
                task.id, task.listing_id, kind.value, decision.scheduled_for,
                " (attempt refunded)" if decision.refund_attempt else "",
            )
            self.queue.retry(lease, decision.scheduled_for, kind, error, decision.refund_attempt, now=now)
            return decision

        if not self.queue.fail(lease, kind, error, now=now):
            return decision

        if kind == FailureKind.VALIDATION_REJECTED:
            listing = self.persistence.get_listing(task.listing_id)
            retailer = self.config.retailer(task.retailer_id)
            if listing is not None and retailer is not None:
                when = now + self.refresh_interval(listing, retailer)
                self._enqueue(listing, self.refresh_priority(listing, retailer), TaskSource.SCHEDULED, when)
                logger.info("Price for %s rejected, next attempt at %s", task.listing_id, when)
        else:
            logger.warning("Task %s for %s gave up: %s", task.id, task.listing_id, decision.reason)
            if self.monitor is not None:
                self.monitor.escalate("retries_exhausted", task.retailer_id, f"{decision.reason}: {error}", task.id)
        return decision
