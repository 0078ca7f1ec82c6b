"""Workers that turn claimed scrape tasks into price observations."""

import logging
import threading
import time
from datetime import timedelta
from decimal import Decimal
from typing import Callable, List, Optional

from core.domain import FailureKind, PriceObservation, ProductListing, Verdict, utcnow
from core.exceptions import FetchError, UnknownRetailer
from core.notifications import LoggingNotifier, PriceChangedEvent, publish_safely
from core.scheduler.queue import Admit, Lease
from core.validation.validator import ROLLING_DAYS, ROLLING_WINDOW, ValidationContext

logger = logging.getLogger(__name__)


class TaskExecutor:
    """Runs one leased task: fetch, validate, persist, notify.

    Failures of any kind are handed to the scheduler's retry logic; nothing
    raised by a fetch or a persistence call escapes ``execute``.
    """

    def __init__(
        self,
        queue,
        scheduler,
        persistence,
        registry,
        rotator,
        breakers,
        monitor,
        validator,
        config,
        notifier=None,
        fetch_timeout: float = 20.0,
        alert_min_confidence: float = 0.6,
        deactivate_after: int = 10,
        price_change_threshold: float = 10.0,
    ):
        self.queue = queue
        self.scheduler = scheduler
        self.persistence = persistence
        self.registry = registry
        self.rotator = rotator
        self.breakers = breakers
        self.monitor = monitor
        self.validator = validator
        self.config = config
        self.notifier = notifier or LoggingNotifier()
        self.fetch_timeout = fetch_timeout
        self.alert_min_confidence = alert_min_confidence
        self.deactivate_after = deactivate_after
        self.price_change_threshold = price_change_threshold

    def execute(self, lease: Lease) -> None:
        task = lease.task
        try:
            listing = self.persistence.get_listing(task.listing_id)
        except Exception as e:
            logger.exception("Loading listing %s failed", task.listing_id)
            self.scheduler.handle_failure(lease, FailureKind.PERSISTENCE_FAILURE, f"persistence_failure: {e}")
            return
        if listing is None:
            self.queue.skip(lease, "listing no longer exists")
            return

        retailer = self.config.retailer(task.retailer_id)
        if retailer is None or not retailer.is_active:
            self.queue.skip(lease, f"retailer {task.retailer_id} is not active")
            return

        try:
            fetcher = self.registry.get(task.retailer_id)
        except UnknownRetailer as e:
            logger.error("No fetcher for task %s: %s", task.id, e)
            self.queue.skip(lease, str(e))
            return

        identity = self.rotator.next(task.retailer_id)
        started = time.monotonic()
        try:
            result = fetcher.fetch(listing.url, identity, self.fetch_timeout)
        except FetchError as e:
            if e.kind == FailureKind.EXTRACTION_FAILURE:
                logger.warning("Extraction failed for %s: %s | snippet: %s", listing.url, e.message, e.snippet)
            self._fetch_failed(lease, listing, identity, e.kind, str(e))
            return
        except Exception as e:
            # parser bugs on unexpected markup
            logger.exception("Fetcher for %s raised on %s", task.retailer_id, listing.url)
            self._fetch_failed(lease, listing, identity, FailureKind.EXTRACTION_FAILURE, f"extraction_failure: {e}")
            return

        elapsed_ms = int((time.monotonic() - started) * 1000)
        self._record_fetch(task.retailer_id, identity, None)
        if lease.cancelled:
            logger.info("Discarding result of cancelled task %s", task.id)
            return

        observed_at = utcnow()
        try:
            observation = self._validate(listing, result, observed_at)
            self.persistence.save_observation(observation)

            previous_price = listing.last_known_price
            listing.last_scraped_at = observed_at
            listing.stock_status = result.stock_status
            listing.validation_status = observation.verdict
            listing.consecutive_failures = 0
            listing.is_active = True
            listing.title = listing.title or result.title
            listing.weight_grams = listing.weight_grams or result.weight_grams
            listing.retailer_sku = listing.retailer_sku or result.sku
            listing.apply_observation(observation)
            self.persistence.save_listing(listing)
        except Exception as e:
            logger.exception("Persisting price for %s failed", listing.id)
            self.scheduler.handle_failure(lease, FailureKind.PERSISTENCE_FAILURE, f"persistence_failure: {e}")
            return

        if observation.verdict == Verdict.REJECTED:
            self.scheduler.handle_failure(
                lease, FailureKind.VALIDATION_REJECTED, "; ".join(observation.reasons) or "rejected"
            )
            return

        self.queue.complete(lease, response_time_ms=elapsed_ms)
        logger.info(
            "Scraped %s on %s: %s (%s, confidence %.2f) in %d ms",
            listing.id, task.retailer_id, observation.price, observation.verdict.value,
            observation.confidence, elapsed_ms,
        )
        self._maybe_alert(listing, observation, previous_price)

    def _fetch_failed(self, lease: Lease, listing: ProductListing, identity, kind: FailureKind, error: str) -> None:
        self._record_fetch(lease.task.retailer_id, identity, kind)
        if lease.cancelled:
            logger.info("Discarding failure of cancelled task %s", lease.task_id)
            return
        self._note_failure(listing)
        self.scheduler.handle_failure(lease, kind, error)

    def _record_fetch(self, retailer_id: str, identity, kind: Optional[FailureKind]) -> None:
        success = kind is None
        if success:
            self.rotator.report_success(retailer_id, identity)
        else:
            self.rotator.report_failure(retailer_id, identity, kind)
        self.breakers.record(retailer_id, success)
        self.monitor.record(retailer_id, success)

    def _note_failure(self, listing: ProductListing) -> None:
        listing.consecutive_failures += 1
        listing.last_scraped_at = utcnow()
        if listing.is_active and listing.consecutive_failures >= self.deactivate_after:
            listing.is_active = False
            logger.warning(
                "Deactivating listing %s after %d consecutive failures", listing.id, listing.consecutive_failures
            )
        try:
            self.persistence.save_listing(listing)
        except Exception:
            logger.exception("Could not record failure on listing %s", listing.id)

    def _history(self, listing: ProductListing, observed_at) -> List[PriceObservation]:
        """Up to the last 10 non-rejected observations, led by the newest row of any verdict."""
        since = observed_at - timedelta(days=ROLLING_DAYS)
        history = self.persistence.recent_observations(
            listing.id, since=since, limit=ROLLING_WINDOW, exclude_rejected=True
        )
        latest = self.persistence.recent_observations(listing.id, since=since, limit=1)
        if latest and (not history or latest[0].id != history[0].id):
            history = latest + history
        return history

    def _validate(self, listing: ProductListing, result, observed_at) -> PriceObservation:
        history = self._history(listing, observed_at)
        context = ValidationContext(
            listing=listing,
            price=result.price,
            observed_at=observed_at,
            rule=self.config.validation_rule(listing.category),
            history=history,
            sibling_prices=self.persistence.sibling_prices(listing.variant_key, listing.id),
        )
        verdict = self.validator.validate(context)
        if verdict.verdict != Verdict.VALID:
            logger.warning(
                "Price %s for %s is %s: %s", result.price, listing.id, verdict.verdict.value, "; ".join(verdict.reasons)
            )
        return PriceObservation(
            listing_id=listing.id,
            price=result.price,
            verdict=verdict.verdict,
            confidence=verdict.confidence,
            recorded_at=observed_at,
            previous_price=verdict.previous_price,
            change_amount=verdict.change_amount,
            change_percent=verdict.change_percent,
            currency=result.currency,
            stock_status=result.stock_status,
            reasons=list(verdict.reasons),
        )

    def _maybe_alert(self, listing: ProductListing, observation: PriceObservation, previous_price) -> None:
        if observation.verdict != Verdict.VALID or observation.confidence < self.alert_min_confidence:
            return
        if previous_price is None or previous_price <= 0 or observation.price >= previous_price:
            return
        category = self.config.category(listing.category)
        threshold = category.price_change_threshold_percent if category else self.price_change_threshold
        drop_percent = (previous_price - observation.price) / previous_price * 100
        if drop_percent < Decimal(str(threshold)):
            logger.debug("Drop of %.2f%% on %s is below the %s%% alert threshold", drop_percent, listing.id, threshold)
            return
        publish_safely(
            self.notifier,
            PriceChangedEvent(
                listing_id=listing.id,
                retailer_id=listing.retailer_id,
                new_price=observation.price,
                previous_price=previous_price,
                change_percent=observation.change_percent,
                confidence=observation.confidence,
                variant_key=listing.variant_key,
                title=listing.title,
                url=listing.url,
                observed_at=observation.recorded_at,
            ),
        )


class WorkerPool:
    """Fixed set of worker threads plus one housekeeping thread.

    Workers claim tasks from the queue, backing off exponentially while it
    has nothing admissible. The housekeeping thread reaps expired leases,
    queues due refreshes and reloads configuration.
    """

    def __init__(
        self,
        queue,
        executor: TaskExecutor,
        admit: Admit,
        scheduler=None,
        config_loader=None,
        worker_count: int = 8,
        idle_backoff_max: float = 5.0,
        refresh_tick_seconds: float = 60.0,
        housekeeping_seconds: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.queue = queue
        self.executor = executor
        self.admit = admit
        self.scheduler = scheduler
        self.config_loader = config_loader
        self.worker_count = worker_count
        self.idle_backoff_max = idle_backoff_max
        self.refresh_tick_seconds = refresh_tick_seconds
        self.housekeeping_seconds = housekeeping_seconds
        self._clock = clock
        self._stopping = threading.Event()
        self._threads: List[threading.Thread] = []
        self._last_refresh_tick: Optional[float] = None

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._threads = [
            threading.Thread(target=self._work, name=f"scrape-worker-{i}", daemon=True)
            for i in range(self.worker_count)
        ]
        self._threads.append(threading.Thread(target=self._housekeeping, name="scrape-housekeeping", daemon=True))
        for thread in self._threads:
            thread.start()
        logger.info("Started %d workers", self.worker_count)

    def stop(self, grace: float = 30.0) -> bool:
        """Stop claiming work and wait up to ``grace`` seconds for in-flight tasks.

        Tasks still running at the deadline are cancelled; their results are
        discarded.

        Returns:
            True if every thread exited
        """
        self._stopping.set()
        self.queue.wake_all()
        deadline = self._clock() + grace
        for thread in self._threads:
            thread.join(max(0.0, deadline - self._clock()))

        stragglers = [t for t in self._threads if t.is_alive()]
        if stragglers:
            abandoned = self.queue.cancel_all()
            logger.warning("Shutdown deadline reached, abandoning %d in-flight tasks", abandoned)
            return False
        logger.info("Workers stopped")
        return True

    def _work(self) -> None:
        backoff = 0.05
        while not self._stopping.is_set():
            claim = self.queue.claim(self.admit)
            if claim.lease is None:
                pause = backoff if claim.wait is None else min(max(claim.wait, 0.01), backoff)
                self.queue.wait_for_work(pause)
                backoff = min(backoff * 2, self.idle_backoff_max)
                continue

            backoff = 0.05
            try:
                self.executor.execute(claim.lease)
            except Exception as e:
                logger.exception("Unexpected error running task %s", claim.lease.task_id)
                self.queue.fail(claim.lease, None, f"internal error: {e}")

    def _housekeeping(self) -> None:
        while not self._stopping.wait(self.housekeeping_seconds):
            self.run_housekeeping()

    def run_housekeeping(self) -> None:
        try:
            self.queue.reap_expired()
        except Exception:
            logger.exception("Lease reaper failed")

        now = self._clock()
        if self.scheduler is not None and (
            self._last_refresh_tick is None or now - self._last_refresh_tick >= self.refresh_tick_seconds
        ):
            self._last_refresh_tick = now
            try:
                self.scheduler.schedule_refreshes()
            except Exception:
                logger.exception("Scheduling refreshes failed")

        if self.config_loader is not None and self.config_loader.refresh_due():
            try:
                self.config_loader.refresh()
            except Exception:
                logger.exception("Configuration refresh failed, keeping previous configuration")
