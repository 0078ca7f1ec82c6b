"""Tests for running leased scrape tasks and the worker pool around them."""

import threading
from datetime import timedelta
from decimal import Decimal

import pytest

from core.domain import FailureKind, TaskSource, TaskStatus, Verdict, utcnow
from core.exceptions import FetchError
from core.scheduler.worker import TaskExecutor, WorkerPool
from core.scrapers.fetcher_registry import FetcherRegistry
from core.scrapers.websites.static_fetcher import StaticFetcher
from core.throttle.rate_governor import Admission
from core.validation.validator import PriceValidator

PRODUCT_URL = "http://example.com/product1"


def admit_all(_retailer_id):
    return Admission(True)


class RecordingNotifier:
    def __init__(self, fail=False):
        self.events = []
        self.fail = fail

    def publish(self, event):
        if self.fail:
            raise RuntimeError("smtp down")
        self.events.append(event)


class FailingFetcher:
    retailer_id = "static"

    def __init__(self, kind=FailureKind.NETWORK_TIMEOUT):
        self.kind = kind

    def fetch(self, url, identity, timeout):
        raise FetchError(self.kind, f"failed to fetch {url}")

    def search(self, query, identity, timeout):
        return []


class BrokenFetcher:
    retailer_id = "static"

    def fetch(self, url, identity, timeout):
        raise AttributeError("'NoneType' object has no attribute 'get_text'")

    def search(self, query, identity, timeout):
        return []


class BlockingFetcher(StaticFetcher):
    """Static fetcher that holds every fetch until released."""

    def __init__(self):
        super().__init__("static")
        self.release = threading.Event()
        self.entered = threading.Event()

    def fetch(self, url, identity, timeout):
        self.entered.set()
        self.release.wait(10)
        return super().fetch(url, identity, timeout)


@pytest.fixture
def fetcher():
    return StaticFetcher("static")


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def make_executor(store, components, notifier):
    def _make(fetcher):
        return TaskExecutor(
            components.queue,
            components.scheduler,
            store,
            FetcherRegistry([fetcher]),
            components.rotator,
            components.breakers,
            components.monitor,
            PriceValidator(),
            components.config,
            notifier=notifier,
        )

    return _make


@pytest.fixture
def executor(make_executor, fetcher):
    return make_executor(fetcher)


@pytest.fixture
def claim(components):
    """Queue an immediate scrape for a listing and claim it."""

    def _claim(listing_id):
        task_id = components.scheduler.submit_immediate(listing_id)
        lease = components.queue.claim(admit_all).lease
        assert lease.task_id == task_id
        return lease

    return _claim


@pytest.fixture
def priced_listing(make_listing, store, observation_at):
    """Listing with three hours of valid history at ``price``."""

    def _make(price, **kwargs):
        now = utcnow()
        listing = make_listing(
            url=PRODUCT_URL,
            last_known_price=Decimal(price),
            last_price_at=now - timedelta(hours=1),
            last_scraped_at=now - timedelta(hours=1),
            **kwargs,
        )
        for hours in (3, 2, 1):
            store.save_observation(observation_at(listing.id, price, now - timedelta(hours=hours)))
        return listing

    return _make


class TestExecute:
    def test_first_price_becomes_current(self, executor, make_listing, store, components, claim, notifier):
        listing = make_listing(url=PRODUCT_URL)
        lease = claim(listing.id)

        executor.execute(lease)

        saved = store.get_listing(listing.id)
        assert saved.last_known_price == Decimal("6299.00")
        assert saved.validation_status == Verdict.VALID
        assert saved.title.startswith("Optimum Nutrition")
        assert saved.weight_grams == 2000
        assert store.recent_observations(listing.id)[0].verdict == Verdict.VALID
        assert components.queue.get(lease.task_id).status == TaskStatus.SUCCEEDED
        assert notifier.events == []

    def test_price_drop_publishes_event(self, executor, priced_listing, claim, notifier):
        listing = priced_listing("7200")

        executor.execute(claim(listing.id))

        assert len(notifier.events) == 1
        event = notifier.events[0]
        assert event.new_price == Decimal("6299.00")
        assert event.previous_price == Decimal("7200")
        assert event.confidence >= 0.6

    def test_price_rise_does_not_alert(self, executor, priced_listing, claim, notifier):
        listing = priced_listing("6000")

        executor.execute(claim(listing.id))

        assert notifier.events == []

    def test_small_drop_below_threshold_does_not_alert(self, executor, priced_listing, claim, store, notifier):
        listing = priced_listing("6500")

        executor.execute(claim(listing.id))

        assert store.get_listing(listing.id).last_known_price == Decimal("6299.00")
        assert notifier.events == []

    def test_category_threshold_applies(
        self, executor, priced_listing, claim, store, components, notifier, whey_category
    ):
        whey_category.price_change_threshold_percent = 2.0
        store.categories["whey_protein"] = whey_category
        components.config.refresh()
        listing = priced_listing("6500", category="whey_protein")

        executor.execute(claim(listing.id))

        assert [event.new_price for event in notifier.events] == [Decimal("6299.00")]

    def test_notifier_failure_is_contained(self, make_executor, fetcher, priced_listing, claim, components):
        executor = make_executor(fetcher)
        executor.notifier = RecordingNotifier(fail=True)
        lease = claim(priced_listing("7200").id)

        executor.execute(lease)

        assert components.queue.get(lease.task_id).status == TaskStatus.SUCCEEDED

    def test_rejected_price_is_stored_but_not_adopted(self, executor, fetcher, priced_listing, claim, store, components):
        listing = priced_listing("3500")
        fetcher.set_price(PRODUCT_URL, Decimal("50000"))
        lease = claim(listing.id)

        executor.execute(lease)

        saved = store.get_listing(listing.id)
        assert saved.last_known_price == Decimal("3500")
        assert saved.validation_status == Verdict.REJECTED
        assert store.recent_observations(listing.id)[0].verdict == Verdict.REJECTED
        task = components.queue.get(lease.task_id)
        assert task.status == TaskStatus.FAILED
        assert task.last_failure_kind == FailureKind.VALIDATION_REJECTED
        # Picked up again at the next regular interval.
        assert components.queue.is_queued(listing.id)

    def test_suspicious_price_is_not_adopted(self, executor, fetcher, priced_listing, claim, store, notifier, components):
        listing = priced_listing("3000")
        fetcher.set_price(PRODUCT_URL, Decimal("1200"))
        lease = claim(listing.id)

        executor.execute(lease)

        saved = store.get_listing(listing.id)
        assert saved.last_known_price == Decimal("3000")
        assert saved.validation_status == Verdict.SUSPICIOUS
        assert notifier.events == []
        assert components.queue.get(lease.task_id).status == TaskStatus.SUCCEEDED

    def test_persistence_failure_is_retried(self, executor, make_listing, claim, store, components):
        listing = make_listing(url=PRODUCT_URL)
        store.fail_observation_saves = 1
        lease = claim(listing.id)

        executor.execute(lease)

        task = components.queue.get(lease.task_id)
        assert task.status == TaskStatus.PENDING
        assert task.last_failure_kind == FailureKind.PERSISTENCE_FAILURE
        assert store.get_listing(listing.id).last_known_price is None

    def test_rolling_average_skips_rejected_rows(
        self, executor, fetcher, make_listing, claim, store, components, observation_at
    ):
        now = utcnow()
        listing = make_listing(url=PRODUCT_URL)
        for hours in range(30, 20, -1):
            store.save_observation(observation_at(listing.id, "3000", now - timedelta(hours=hours)))
        for hours in range(10, 0, -1):
            store.save_observation(
                observation_at(listing.id, "50000", now - timedelta(hours=hours), Verdict.REJECTED)
            )
        fetcher.set_price(PRODUCT_URL, Decimal("50000"))
        lease = claim(listing.id)

        executor.execute(lease)

        assert store.get_listing(listing.id).validation_status == Verdict.REJECTED
        assert components.queue.get(lease.task_id).last_failure_kind == FailureKind.VALIDATION_REJECTED

    def test_listing_load_failure_is_retried(self, executor, make_listing, claim, store, components):
        listing = make_listing(url=PRODUCT_URL)
        store.fail_listing_loads = 1
        lease = claim(listing.id)

        executor.execute(lease)

        task = components.queue.get(lease.task_id)
        assert task.status == TaskStatus.PENDING
        assert task.attempts == 1
        assert task.last_failure_kind == FailureKind.PERSISTENCE_FAILURE
        assert "db connection lost" in task.last_error

    def test_unexpected_fetcher_error_is_retried(self, make_executor, make_listing, claim, store, components):
        executor = make_executor(BrokenFetcher())
        listing = make_listing(url=PRODUCT_URL)
        lease = claim(listing.id)

        executor.execute(lease)

        task = components.queue.get(lease.task_id)
        assert task.status == TaskStatus.PENDING
        assert task.last_failure_kind == FailureKind.EXTRACTION_FAILURE
        assert store.get_listing(listing.id).consecutive_failures == 1
        assert components.monitor.success_rate("static") == (0.0, 1)

    def test_fetch_failure_counts_against_listing(self, make_executor, make_listing, claim, store, components):
        executor = make_executor(FailingFetcher())
        listing = make_listing(url=PRODUCT_URL)
        lease = claim(listing.id)

        executor.execute(lease)

        assert store.get_listing(listing.id).consecutive_failures == 1
        task = components.queue.get(lease.task_id)
        assert task.status == TaskStatus.PENDING
        assert task.last_failure_kind == FailureKind.NETWORK_TIMEOUT
        assert components.monitor.success_rate("static") == (0.0, 1)

    def test_listing_deactivated_after_repeated_failures(self, make_executor, make_listing, claim, store):
        executor = make_executor(FailingFetcher(FailureKind.EXTRACTION_FAILURE))
        listing = make_listing(url=PRODUCT_URL, consecutive_failures=9)

        executor.execute(claim(listing.id))

        saved = store.get_listing(listing.id)
        assert saved.consecutive_failures == 10
        assert not saved.is_active

    def test_cancelled_lease_result_is_discarded(self, executor, make_listing, claim, store):
        listing = make_listing(url=PRODUCT_URL)
        lease = claim(listing.id)
        lease.cancel.set()

        executor.execute(lease)

        assert store.observations == []
        assert store.get_listing(listing.id).last_known_price is None

    def test_missing_listing_is_skipped(self, executor, make_listing, claim, store, components):
        listing = make_listing(url=PRODUCT_URL)
        lease = claim(listing.id)
        del store.listings[listing.id]

        executor.execute(lease)

        assert components.queue.get(lease.task_id).status == TaskStatus.SKIPPED

    def test_retailer_without_fetcher_is_skipped(self, make_executor, make_listing, claim, components):
        executor = make_executor(StaticFetcher("elsewhere"))
        lease = claim(make_listing(url=PRODUCT_URL).id)

        executor.execute(lease)

        task = components.queue.get(lease.task_id)
        assert task.status == TaskStatus.SKIPPED
        assert "Unknown retailer" in task.last_error


class TestWorkerPool:
    def test_workers_drain_the_queue(self, executor, make_listing, components):
        listings = [make_listing(url=f"http://example.com/product{i}") for i in range(1, 6)]
        task_ids = [components.scheduler.submit_immediate(listing.id) for listing in listings]
        pool = WorkerPool(components.queue, executor, admit_all, worker_count=3)

        pool.start()
        try:
            finished = [components.queue.wait_for(task_id, 5) for task_id in task_ids]
        finally:
            assert pool.stop(grace=5)

        assert [task.status for task in finished] == [TaskStatus.SUCCEEDED] * 5
        assert not pool.running

    def test_stop_abandons_stuck_tasks(self, make_executor, make_listing, components, store):
        fetcher = BlockingFetcher()
        executor = make_executor(fetcher)
        listing = make_listing(url=PRODUCT_URL)
        components.scheduler.submit_immediate(listing.id)
        pool = WorkerPool(components.queue, executor, admit_all, worker_count=1)

        pool.start()
        assert fetcher.entered.wait(5)
        clean = pool.stop(grace=0.1)
        fetcher.release.set()
        for thread in pool._threads:
            thread.join(5)

        assert not clean
        assert store.observations == []

    def test_housekeeping_queues_due_refreshes(self, executor, make_listing, components):
        listing = make_listing(url=PRODUCT_URL, created_at=utcnow() - timedelta(hours=1))
        pool = WorkerPool(
            components.queue, executor, admit_all,
            scheduler=components.scheduler, config_loader=components.config,
        )

        pool.run_housekeeping()

        assert components.queue.is_queued(listing.id)
        lease = components.queue.claim(admit_all).lease
        assert lease.task.source == TaskSource.SCHEDULED
