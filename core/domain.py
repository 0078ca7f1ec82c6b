# Domain values shared by every engine component.
# Persistence rows live in core.database.models; these dataclasses are what the
# scheduler, validator and fetchers pass between each other.

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the database columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class DiscoveryStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.SUCCEEDED, TaskStatus.FAILED, TaskStatus.SKIPPED)


class TaskSource(str, Enum):
    SCHEDULED = "scheduled"
    USER_REQUEST = "user_request"
    DISCOVERY = "discovery"
    RETRY = "retry"


class Verdict(str, Enum):
    VALID = "valid"
    SUSPICIOUS = "suspicious"
    REJECTED = "rejected"


class StockStatus(str, Enum):
    IN_STOCK = "in_stock"
    OUT_OF_STOCK = "out_of_stock"
    LIMITED = "limited"
    UNKNOWN = "unknown"


class FailureKind(str, Enum):
    """Why a scrape attempt did not produce a usable price."""

    RATE_LIMITED = "rate_limited"
    NETWORK_TIMEOUT = "network_timeout"
    NETWORK_ERROR = "network_error"
    BLOCKED = "blocked"
    EXTRACTION_FAILURE = "extraction_failure"
    VALIDATION_REJECTED = "validation_rejected"
    PERSISTENCE_FAILURE = "persistence_failure"

    @property
    def is_fetch_failure(self) -> bool:
        """Failures that say something about the retailer's health."""
        return self not in (FailureKind.VALIDATION_REJECTED, FailureKind.PERSISTENCE_FAILURE)


@dataclass
class Retailer:
    """Scraping configuration for one retailer."""

    id: str
    name: str
    website_url: str
    search_url_template: Optional[str] = None
    requests_per_minute: int = 10
    requests_per_hour: int = 300
    min_delay_seconds: float = 2.0
    use_proxy_rotation: bool = True
    use_user_agent_rotation: bool = True
    max_failure_rate_percent: float = 15.0
    scrape_interval_hours: float = 24.0
    sale_interval_hours: float = 6.0
    sale_period_active: bool = False
    is_active: bool = True


@dataclass
class CategoryScrapeConfig:
    category: str
    default_interval_hours: float = 24.0
    sale_period_interval_hours: float = 6.0
    high_demand_interval_hours: float = 12.0
    price_change_threshold_percent: float = 10.0
    high_demand: bool = False
    is_active: bool = True


@dataclass
class ValidationRule:
    """Price sanity bounds; ``category`` of None is the global rule."""

    category: Optional[str] = None
    min_price_multiplier: Decimal = Decimal("0.1")
    max_price_multiplier: Decimal = Decimal("10.0")
    min_price_per_gram: Optional[Decimal] = None
    max_price_per_gram: Optional[Decimal] = None
    max_price_change_percent_daily: Decimal = Decimal("50.0")


@dataclass
class ProductListing:
    """A product variant as sold by one retailer."""

    retailer_id: str
    url: str
    id: str = field(default_factory=new_id)
    variant_key: Optional[str] = None
    retailer_sku: Optional[str] = None
    title: Optional[str] = None
    category: Optional[str] = None
    weight_grams: Optional[int] = None
    currency: str = "INR"
    last_known_price: Optional[Decimal] = None
    last_price_at: Optional[datetime] = None
    last_scraped_at: Optional[datetime] = None
    consecutive_failures: int = 0
    stock_status: StockStatus = StockStatus.UNKNOWN
    validation_status: Optional[Verdict] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)

    def apply_observation(self, observation: "PriceObservation") -> bool:
        """Adopt a valid observation as the current price if it is the newest.

        Returns:
            True when ``last_known_price`` was updated
        """
        if observation.verdict != Verdict.VALID:
            return False
        if self.last_price_at is not None and observation.recorded_at < self.last_price_at:
            return False
        self.last_known_price = observation.price
        self.last_price_at = observation.recorded_at
        return True


@dataclass
class PriceObservation:
    """A single price reading. Never mutated after creation."""

    listing_id: str
    price: Decimal
    verdict: Verdict
    confidence: float
    recorded_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=new_id)
    previous_price: Optional[Decimal] = None
    change_amount: Optional[Decimal] = None
    change_percent: Optional[Decimal] = None
    currency: str = "INR"
    stock_status: StockStatus = StockStatus.UNKNOWN
    reasons: List[str] = field(default_factory=list)
    source: str = "scraper"


@dataclass
class ScrapeTask:
    listing_id: str
    retailer_id: str
    priority: int
    source: TaskSource
    scheduled_for: datetime
    id: str = field(default_factory=new_id)
    status: TaskStatus = TaskStatus.PENDING
    attempts: int = 0
    max_attempts: int = 3
    rate_limit_deferrals: int = 0
    last_error: Optional[str] = None
    last_failure_kind: Optional[FailureKind] = None
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    response_time_ms: Optional[int] = None


@dataclass
class RetailerDiscoveryResult:
    listing_ids: List[str] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class DiscoveryRequest:
    query: str
    target_retailers: List[str] = field(default_factory=list)
    requester_id: Optional[str] = None
    id: str = field(default_factory=new_id)
    status: DiscoveryStatus = DiscoveryStatus.PENDING
    requested_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    listing_ids: List[str] = field(default_factory=list)
    retailer_results: Dict[str, RetailerDiscoveryResult] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (DiscoveryStatus.COMPLETED, DiscoveryStatus.FAILED)


@dataclass(frozen=True)
class Identity:
    """Outbound request identity: proxy (None means direct) and user agent."""

    user_agent: str
    proxy: Optional[str] = None

    @property
    def key(self) -> str:
        return f"{self.proxy or 'direct'}|{self.user_agent}"

    def proxies(self) -> Optional[Dict[str, str]]:
        if not self.proxy:
            return None
        return {"http": self.proxy, "https": self.proxy}
