"""The engine facade: wires the components together and exposes the operations
the API, the CLI and other collaborators use.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from config.settings import Settings, get_settings
from core.config_loader import ConfigLoader
from core.discovery.processor import DiscoveryProcessor
from core.domain import DiscoveryRequest, ScrapeTask, StockStatus, TaskStatus
from core.exceptions import ListingNotFound
from core.health.circuit_breaker import BreakerBoard
from core.health.failures import RetryPolicy
from core.health.monitor import EngineHealth, HealthMonitor, RetailerHealth
from core.scheduler.queue import TaskQueue
from core.scheduler.scheduler import IMMEDIATE_PRIORITY, ScrapeScheduler
from core.scheduler.worker import TaskExecutor, WorkerPool
from core.scrapers.fetcher_registry import FetcherRegistry
from core.throttle.identity import IdentityRotator
from core.throttle.rate_governor import Admission, RateGovernor
from core.validation.validator import PriceValidator

logger = logging.getLogger(__name__)

PRICE_UNAVAILABLE = "price unavailable, retry later"


@dataclass
class PriceResponse:
    listing_id: str
    available: bool
    price: Optional[Decimal] = None
    price_at: Optional[datetime] = None
    stock_status: StockStatus = StockStatus.UNKNOWN
    task_id: Optional[str] = None
    task_status: Optional[TaskStatus] = None
    message: str = ""


class ScrapeEngine:
    """Demand-driven scraping engine.

    Args:
        persistence: ``Persistence`` implementation
        registry: Fetchers by retailer id; defaults to every built-in retailer
        notifier: Receives price-drop events; defaults to logging them
        settings: Engine knobs, ``get_settings()`` when omitted
    """

    def __init__(self, persistence, registry: Optional[FetcherRegistry] = None, notifier=None,
                 settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        s = self.settings
        self.persistence = persistence
        self.registry = registry or FetcherRegistry.default()

        self.monitor = HealthMonitor()
        self.governor = RateGovernor(max_wait=s.MAX_RATE_WAIT_SECONDS)
        self.rotator = IdentityRotator(
            proxies=s.proxies,
            failure_threshold=s.IDENTITY_FAILURE_THRESHOLD,
            cooldown=s.IDENTITY_COOLDOWN_SECONDS,
        )
        self.breakers = BreakerBoard(
            window=s.BREAKER_WINDOW,
            min_samples=s.BREAKER_MIN_SAMPLES,
            cooldown=s.BREAKER_COOLDOWN_SECONDS,
            on_trip=self._on_breaker_trip,
        )
        self.config = ConfigLoader(
            persistence,
            on_retailer=[self.governor.configure, self.rotator.configure, self.breakers.configure],
            refresh_seconds=s.CONFIG_REFRESH_SECONDS,
        )
        self.queue = TaskQueue(lease_seconds=s.LEASE_SECONDS)
        self.scheduler = ScrapeScheduler(
            self.queue,
            persistence,
            self.config,
            policy=RetryPolicy(base_seconds=s.RETRY_BASE_SECONDS, max_seconds=s.RETRY_MAX_SECONDS),
            max_attempts=s.DEFAULT_MAX_ATTEMPTS,
            monitor=self.monitor,
        )
        self.executor = TaskExecutor(
            self.queue,
            self.scheduler,
            persistence,
            self.registry,
            self.rotator,
            self.breakers,
            self.monitor,
            PriceValidator(s.CONFIRMATION_TOLERANCE_PERCENT),
            self.config,
            notifier=notifier,
            fetch_timeout=s.FETCH_TIMEOUT_SECONDS,
            alert_min_confidence=s.ALERT_MIN_CONFIDENCE,
            deactivate_after=s.LISTING_DEACTIVATE_AFTER,
            price_change_threshold=s.PRICE_CHANGE_THRESHOLD_PERCENT,
        )
        self.pool = WorkerPool(
            self.queue,
            self.executor,
            self._admit,
            scheduler=self.scheduler,
            config_loader=self.config,
            worker_count=s.WORKER_COUNT,
            idle_backoff_max=s.IDLE_BACKOFF_MAX_SECONDS,
            refresh_tick_seconds=s.REFRESH_TICK_SECONDS,
        )
        self.discovery = DiscoveryProcessor(
            persistence,
            self.registry,
            self.governor,
            self.rotator,
            self.breakers,
            self.monitor,
            self.scheduler,
            self.config,
            fetch_timeout=s.FETCH_TIMEOUT_SECONDS,
            max_wait=s.MAX_RATE_WAIT_SECONDS,
        )
        self._discoveries: Optional[ThreadPoolExecutor] = None
        self._pending_discoveries: Dict[str, Future] = {}
        self._lock = threading.Lock()
        self._config_loaded = False

    def _on_breaker_trip(self, retailer_id: str, cooldown: float) -> None:
        self.monitor.escalate("circuit_open", retailer_id, f"dispatch suspended for {cooldown:.0f}s")

    def _admit(self, retailer_id: str) -> Admission:
        """Admission for the queue: the circuit breaker first, then the rate governor."""
        if not self.breakers.can_dispatch(retailer_id):
            return Admission(False, self.settings.IDLE_BACKOFF_MAX_SECONDS)
        admission = self.governor.try_acquire(retailer_id)
        if admission.proceed:
            self.breakers.on_dispatch(retailer_id)
        return admission

    # -- lifecycle --------------------------------------------------------

    def refresh_config(self) -> None:
        self.config.refresh()
        self._config_loaded = True

    def _ensure_config(self) -> None:
        if not self._config_loaded:
            self.refresh_config()

    def start(self) -> None:
        self._ensure_config()
        with self._lock:
            if self._discoveries is None:
                self._discoveries = ThreadPoolExecutor(max_workers=2, thread_name_prefix="discovery")
        self.pool.start()

    def stop(self, grace: Optional[float] = None) -> bool:
        grace = self.settings.SHUTDOWN_GRACE_SECONDS if grace is None else grace
        with self._lock:
            discoveries, self._discoveries = self._discoveries, None
        if discoveries is not None:
            discoveries.shutdown(wait=False, cancel_futures=True)
        return self.pool.stop(grace)

    # -- exposed operations -----------------------------------------------

    def submit_discovery_request(
        self, query: str, retailers: Optional[List[str]] = None, requester_id: Optional[str] = None
    ) -> str:
        """Record a search and process it in the background.

        Returns:
            The discovery request id; poll ``get_discovery_request`` for results
        """
        self._ensure_config()
        request = DiscoveryRequest(
            query=(query or "").strip(),
            target_retailers=list(retailers or []),
            requester_id=requester_id,
        )
        self.persistence.save_discovery_request(request)

        with self._lock:
            executor = self._discoveries
            if executor is not None:
                self._pending_discoveries[request.id] = executor.submit(self._run_discovery, request)
        if executor is None:
            self._run_discovery(request)
        return request.id

    def _run_discovery(self, request: DiscoveryRequest) -> None:
        try:
            self.discovery.process(request)
        except Exception:
            logger.exception("Discovery %s could not be recorded", request.id)
            raise
        finally:
            with self._lock:
                self._pending_discoveries.pop(request.id, None)

    def wait_for_discovery(self, request_id: str, timeout: Optional[float] = None) -> Optional[DiscoveryRequest]:
        with self._lock:
            future = self._pending_discoveries.get(request_id)
        if future is not None:
            future.result(timeout=timeout)
        return self.get_discovery_request(request_id)

    def get_discovery_request(self, request_id: str) -> Optional[DiscoveryRequest]:
        return self.persistence.get_discovery_request(request_id)

    def submit_immediate_scrape(self, listing_id: str, priority: int = IMMEDIATE_PRIORITY) -> str:
        self._ensure_config()
        return self.scheduler.submit_immediate(listing_id, priority)

    def request_price(self, listing_id: str, wait: Optional[float] = None) -> PriceResponse:
        """Scrape a listing now and wait a bounded time for the price.

        When no fresh valid price arrives in time the response says so
        instead of blocking; the scrape itself stays queued.
        """
        wait = self.settings.IMMEDIATE_SCRAPE_WAIT_SECONDS if wait is None else wait
        task_id = self.submit_immediate_scrape(listing_id)
        task = self.queue.wait_for(task_id, wait)

        listing = self.persistence.get_listing(listing_id)
        if listing is None:
            raise ListingNotFound(listing_id)
        response = PriceResponse(
            listing_id=listing_id,
            available=False,
            price=listing.last_known_price,
            price_at=listing.last_price_at,
            stock_status=listing.stock_status,
            task_id=task_id,
            task_status=task.status if task else None,
            message=PRICE_UNAVAILABLE,
        )
        # a suspicious price completes the task without replacing the current one
        fresh = (
            task is not None
            and task.status == TaskStatus.SUCCEEDED
            and listing.last_price_at is not None
            and task.started_at is not None
            and listing.last_price_at >= task.started_at.replace(microsecond=0)
        )
        if fresh:
            response.available = True
            response.message = "ok"
        return response

    def get_task(self, task_id: str) -> Optional[ScrapeTask]:
        return self.queue.get(task_id)

    def get_engine_health(self) -> EngineHealth:
        breaker_states = self.breakers.states()
        retailer_ids = set(breaker_states) | set(self.monitor.retailer_ids())
        retailer_ids |= {r.id for r in self.config.active_retailers()}

        retailers = {}
        for retailer_id in sorted(retailer_ids):
            rate, samples = self.monitor.success_rate(retailer_id)
            retailers[retailer_id] = RetailerHealth(
                retailer_id=retailer_id,
                success_rate=rate,
                samples=samples,
                breaker_state=self.breakers.state(retailer_id).value,
            )
        return EngineHealth(
            queue_depth=self.queue.depth(),
            in_progress=self.queue.in_progress_count(),
            retailers=retailers,
            escalations=self.monitor.escalations(),
            workers_running=self.pool.running,
        )
