"""
Shared fixtures for engine tests.

Provides a controllable clock, an in-memory persistence layer and
helpers for building retailers and listings.
"""

import copy
import threading
from datetime import datetime
from decimal import Decimal
from types import SimpleNamespace

import pytest

from core.config_loader import ConfigLoader
from core.domain import (
    CategoryScrapeConfig,
    DiscoveryRequest,
    PriceObservation,
    ProductListing,
    Retailer,
    ValidationRule,
    Verdict,
)
from core.health.circuit_breaker import BreakerBoard
from core.health.monitor import HealthMonitor
from core.scheduler.queue import TaskQueue
from core.scheduler.scheduler import ScrapeScheduler
from core.throttle.identity import IdentityRotator
from core.throttle.rate_governor import RateGovernor


class FakeClock:
    """Monotonic clock that only moves when told to (or when slept on)."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class InMemoryPersistence:
    """Dict-backed stand-in for DatabasePersistence with the same semantics."""

    def __init__(self):
        self._lock = threading.Lock()
        self.retailers = {}
        self.categories = {}
        self.rules = {}
        self.listings = {}
        self.observations = []
        self.discoveries = {}
        self.fail_observation_saves = 0
        self.fail_listing_loads = 0

    def add_retailer(self, retailer: Retailer) -> Retailer:
        self.retailers[retailer.id] = retailer
        return retailer

    def save_listing(self, listing):
        with self._lock:
            stored = self.listings.get(listing.id)
            saved = copy.deepcopy(listing)
            if stored is not None and stored.last_price_at is not None and (
                listing.last_price_at is None or listing.last_price_at < stored.last_price_at
            ):
                saved.last_known_price = stored.last_known_price
                saved.last_price_at = stored.last_price_at
            self.listings[listing.id] = saved
            return copy.deepcopy(saved)

    def save_observation(self, observation):
        with self._lock:
            if self.fail_observation_saves > 0:
                self.fail_observation_saves -= 1
                raise RuntimeError("database unavailable")
            for existing in self.observations:
                if existing.listing_id == observation.listing_id and existing.recorded_at == observation.recorded_at:
                    return False
            self.observations.append(copy.deepcopy(observation))
            return True

    def load_active_listings(self, retailer_id=None):
        with self._lock:
            return [
                copy.deepcopy(item) for item in self.listings.values()
                if item.is_active and (retailer_id is None or item.retailer_id == retailer_id)
            ]

    def load_validation_rules(self, category):
        return self.rules.get(category) or self.rules.get(None) or ValidationRule(category=category)

    def get_listing(self, listing_id):
        with self._lock:
            if self.fail_listing_loads > 0:
                self.fail_listing_loads -= 1
                raise RuntimeError("db connection lost")
            listing = self.listings.get(listing_id)
            return copy.deepcopy(listing) if listing else None

    def find_listing(self, retailer_id, url=None, sku=None):
        with self._lock:
            candidates = [item for item in self.listings.values() if item.retailer_id == retailer_id]
            for listing in candidates:
                if url and listing.url == url:
                    return copy.deepcopy(listing)
            for listing in candidates:
                if sku and listing.retailer_sku == sku:
                    return copy.deepcopy(listing)
            return None

    def recent_observations(self, listing_id, since=None, limit=10, exclude_rejected=False):
        with self._lock:
            found = [
                o for o in self.observations
                if o.listing_id == listing_id and (since is None or o.recorded_at >= since)
                and not (exclude_rejected and o.verdict == Verdict.REJECTED)
            ]
            found.sort(key=lambda o: o.recorded_at, reverse=True)
            return copy.deepcopy(found[:limit])

    def sibling_prices(self, variant_key, exclude_listing_id):
        if not variant_key:
            return []
        with self._lock:
            return [
                item.last_known_price for item in self.listings.values()
                if item.variant_key == variant_key and item.id != exclude_listing_id
                and item.is_active and item.last_known_price is not None
            ]

    def load_retailers(self, active_only=True):
        return [copy.deepcopy(r) for r in self.retailers.values() if r.is_active or not active_only]

    def load_category_configs(self):
        return dict(self.categories)

    def save_discovery_request(self, request):
        with self._lock:
            self.discoveries[request.id] = copy.deepcopy(request)

    def get_discovery_request(self, request_id):
        with self._lock:
            request = self.discoveries.get(request_id)
            return copy.deepcopy(request) if request else None

    def list_listings(self, retailer_id=None, limit=100):
        with self._lock:
            found = [item for item in self.listings.values() if retailer_id is None or item.retailer_id == retailer_id]
            found.sort(key=lambda item: item.created_at, reverse=True)
            return copy.deepcopy(found[:limit])


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryPersistence()


@pytest.fixture
def static_retailer():
    return Retailer(
        id="static",
        name="Static",
        website_url="http://example.com",
        requests_per_minute=600,
        requests_per_hour=36000,
        min_delay_seconds=0.0,
        use_proxy_rotation=False,
        use_user_agent_rotation=False,
    )


@pytest.fixture
def make_listing(store):
    """Factory creating and storing a listing."""

    def _make(retailer_id="static", url="http://example.com/product1", **kwargs):
        listing = ProductListing(retailer_id=retailer_id, url=url, **kwargs)
        return store.save_listing(listing)

    return _make


@pytest.fixture
def observation_at():
    """Factory for stored-style observations at a given time."""

    def _make(listing_id, price, recorded_at, verdict=Verdict.VALID):
        return PriceObservation(
            listing_id=listing_id,
            price=Decimal(str(price)),
            verdict=verdict,
            confidence=0.8,
            recorded_at=recorded_at,
        )

    return _make


@pytest.fixture
def base_time():
    return datetime(2025, 3, 1, 12, 0, 0)


@pytest.fixture
def whey_category():
    return CategoryScrapeConfig(category="whey_protein")


@pytest.fixture
def new_discovery():
    def _make(query="whey", retailers=None):
        return DiscoveryRequest(query=query, target_retailers=list(retailers or []))

    return _make


@pytest.fixture
def components(store, clock, static_retailer):
    """Engine building blocks wired to the fake clock and the in-memory store.

    The static retailer is registered and configured; add more retailers to
    ``store`` and call ``config.refresh()`` again as needed.
    """
    store.add_retailer(static_retailer)
    governor = RateGovernor(max_wait=30, clock=clock, sleep=clock.sleep)
    rotator = IdentityRotator(clock=clock)
    breakers = BreakerBoard(clock=clock)
    monitor = HealthMonitor(clock=clock)
    config = ConfigLoader(store, on_retailer=[governor.configure, rotator.configure, breakers.configure], clock=clock)
    config.refresh()
    queue = TaskQueue()
    scheduler = ScrapeScheduler(queue, store, config, monitor=monitor)
    return SimpleNamespace(
        governor=governor,
        rotator=rotator,
        breakers=breakers,
        monitor=monitor,
        config=config,
        queue=queue,
        scheduler=scheduler,
    )
