"""Persistence interface consumed by the engine, and its SQLAlchemy implementation.

The engine only talks to the :class:`Persistence` protocol. Every call is
transactional at the single-row level; no operation needs multi-row
atomicity.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Protocol

import sqlalchemy.exc

from core.domain import (
    CategoryScrapeConfig,
    DiscoveryRequest,
    DiscoveryStatus,
    PriceObservation,
    ProductListing,
    Retailer,
    RetailerDiscoveryResult,
    StockStatus,
    ValidationRule,
    Verdict,
)
from .models import (
    CategoryConfigRecord,
    DiscoveryRequestRecord,
    PriceHistoryRecord,
    ProductListingRecord,
    RetailerRecord,
    ValidationRuleRecord,
)

logger = logging.getLogger(__name__)


class Persistence(Protocol):
    def save_listing(self, listing: ProductListing) -> ProductListing: ...

    def save_observation(self, observation: PriceObservation) -> bool: ...

    def load_active_listings(self, retailer_id: Optional[str] = None) -> List[ProductListing]: ...

    def load_validation_rules(self, category: Optional[str]) -> ValidationRule: ...

    def get_listing(self, listing_id: str) -> Optional[ProductListing]: ...

    def find_listing(
        self, retailer_id: str, url: Optional[str] = None, sku: Optional[str] = None
    ) -> Optional[ProductListing]: ...

    def recent_observations(
        self, listing_id: str, since: Optional[datetime] = None, limit: int = 10, exclude_rejected: bool = False
    ) -> List[PriceObservation]: ...

    def sibling_prices(self, variant_key: Optional[str], exclude_listing_id: str) -> List[Decimal]: ...

    def load_retailers(self, active_only: bool = True) -> List[Retailer]: ...

    def load_category_configs(self) -> Dict[str, CategoryScrapeConfig]: ...

    def save_discovery_request(self, request: DiscoveryRequest) -> None: ...

    def get_discovery_request(self, request_id: str) -> Optional[DiscoveryRequest]: ...

    def list_listings(self, retailer_id: Optional[str] = None, limit: int = 100) -> List[ProductListing]: ...


def _optional_decimal(value) -> Optional[Decimal]:
    return None if value is None else Decimal(str(value))


def listing_from_record(row: ProductListingRecord) -> ProductListing:
    return ProductListing(
        id=row.id,
        retailer_id=row.retailer_id,
        url=row.url,
        variant_key=row.variant_key,
        retailer_sku=row.retailer_sku,
        title=row.title,
        category=row.category,
        weight_grams=row.weight_grams,
        currency=row.currency,
        last_known_price=_optional_decimal(row.last_known_price),
        last_price_at=row.last_price_at,
        last_scraped_at=row.last_scraped_at,
        consecutive_failures=row.consecutive_failures or 0,
        stock_status=StockStatus(row.stock_status or "unknown"),
        validation_status=Verdict(row.validation_status) if row.validation_status else None,
        is_active=row.is_active,
        created_at=row.created_at,
    )


def observation_from_record(row: PriceHistoryRecord) -> PriceObservation:
    return PriceObservation(
        id=row.id,
        listing_id=row.listing_id,
        price=_optional_decimal(row.price),
        verdict=Verdict(row.verdict),
        confidence=row.confidence,
        recorded_at=row.recorded_at,
        previous_price=_optional_decimal(row.previous_price),
        change_amount=_optional_decimal(row.change_amount),
        change_percent=_optional_decimal(row.change_percent),
        currency=row.currency,
        stock_status=StockStatus(row.stock_status or "unknown"),
        reasons=list(row.reasons or []),
        source=row.source,
    )


def retailer_from_record(row: RetailerRecord) -> Retailer:
    return Retailer(
        id=row.id,
        name=row.name,
        website_url=row.website_url,
        search_url_template=row.search_url_template,
        requests_per_minute=row.requests_per_minute,
        requests_per_hour=row.requests_per_hour,
        min_delay_seconds=row.min_delay_seconds,
        use_proxy_rotation=row.use_proxy_rotation,
        use_user_agent_rotation=row.use_user_agent_rotation,
        max_failure_rate_percent=row.max_failure_rate_percent,
        scrape_interval_hours=row.scrape_interval_hours,
        sale_interval_hours=row.sale_interval_hours,
        sale_period_active=row.sale_period_active,
        is_active=row.is_active,
    )


def _discovery_from_record(row: DiscoveryRequestRecord) -> DiscoveryRequest:
    return DiscoveryRequest(
        id=row.id,
        query=row.query,
        target_retailers=list(row.target_retailers or []),
        requester_id=row.requester_id,
        status=DiscoveryStatus(row.status),
        requested_at=row.requested_at,
        started_at=row.started_at,
        completed_at=row.completed_at,
        listing_ids=list(row.listing_ids or []),
        retailer_results={
            retailer_id: RetailerDiscoveryResult(
                listing_ids=list(result.get("listing_ids") or []),
                error=result.get("error"),
            )
            for retailer_id, result in (row.retailer_results or {}).items()
        },
        error=row.error,
    )


class DatabasePersistence:
    """``Persistence`` on top of a SQLAlchemy session factory.

    Args:
        session_factory: Callable returning a new ``Session`` (``SessionLocal``)
    """

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def save_listing(self, listing: ProductListing) -> ProductListing:
        """Insert or update a listing.

        The stored price only moves forward in time: if the row already
        holds a price recorded after ``listing.last_price_at``, that price
        is kept.
        """
        with self.session_factory() as db:
            row = db.get(ProductListingRecord, listing.id)
            if row is None:
                row = ProductListingRecord(id=listing.id, created_at=listing.created_at)
                db.add(row)

            row.retailer_id = listing.retailer_id
            row.url = listing.url
            row.variant_key = listing.variant_key
            row.retailer_sku = listing.retailer_sku
            row.title = listing.title
            row.category = listing.category
            row.weight_grams = listing.weight_grams
            row.currency = listing.currency
            row.last_scraped_at = listing.last_scraped_at
            row.consecutive_failures = listing.consecutive_failures
            row.stock_status = listing.stock_status.value
            row.validation_status = listing.validation_status.value if listing.validation_status else None
            row.is_active = listing.is_active

            if listing.last_price_at is not None and (
                row.last_price_at is None or listing.last_price_at >= row.last_price_at
            ):
                row.last_known_price = listing.last_known_price
                row.last_price_at = listing.last_price_at

            db.commit()
            return listing_from_record(row)

    def save_observation(self, observation: PriceObservation) -> bool:
        """Append an observation.

        Returns:
            False when an observation for the same listing and timestamp was
            already stored (a retried write), True otherwise
        """
        with self.session_factory() as db:
            existing = (
                db.query(PriceHistoryRecord)
                .filter(
                    PriceHistoryRecord.listing_id == observation.listing_id,
                    PriceHistoryRecord.recorded_at == observation.recorded_at,
                )
                .first()
            )
            if existing is not None:
                logger.debug("Observation for %s at %s already stored", observation.listing_id, observation.recorded_at)
                return False

            db.add(
                PriceHistoryRecord(
                    id=observation.id,
                    listing_id=observation.listing_id,
                    price=observation.price,
                    previous_price=observation.previous_price,
                    change_amount=observation.change_amount,
                    change_percent=observation.change_percent,
                    currency=observation.currency,
                    stock_status=observation.stock_status.value,
                    verdict=observation.verdict.value,
                    confidence=observation.confidence,
                    reasons=list(observation.reasons),
                    source=observation.source,
                    recorded_at=observation.recorded_at,
                )
            )
            try:
                db.commit()
            except sqlalchemy.exc.IntegrityError:
                # Lost a race with a concurrent write of the same observation
                db.rollback()
                return False
            return True

    def load_active_listings(self, retailer_id: Optional[str] = None) -> List[ProductListing]:
        with self.session_factory() as db:
            query = db.query(ProductListingRecord).filter(ProductListingRecord.is_active.is_(True))
            if retailer_id:
                query = query.filter(ProductListingRecord.retailer_id == retailer_id)
            return [listing_from_record(row) for row in query.all()]

    def load_validation_rules(self, category: Optional[str]) -> ValidationRule:
        """Rule for ``category``, falling back to the global rule, then to defaults."""
        with self.session_factory() as db:
            row = None
            if category:
                row = db.query(ValidationRuleRecord).filter(ValidationRuleRecord.category == category).first()
            if row is None:
                row = db.query(ValidationRuleRecord).filter(ValidationRuleRecord.category.is_(None)).first()
            if row is None:
                return ValidationRule(category=category)
            return ValidationRule(
                category=row.category,
                min_price_multiplier=Decimal(str(row.min_price_multiplier)),
                max_price_multiplier=Decimal(str(row.max_price_multiplier)),
                min_price_per_gram=_optional_decimal(row.min_price_per_gram),
                max_price_per_gram=_optional_decimal(row.max_price_per_gram),
                max_price_change_percent_daily=Decimal(str(row.max_price_change_percent_daily)),
            )

    def get_listing(self, listing_id: str) -> Optional[ProductListing]:
        with self.session_factory() as db:
            row = db.get(ProductListingRecord, listing_id)
            return listing_from_record(row) if row is not None else None

    def find_listing(
        self, retailer_id: str, url: Optional[str] = None, sku: Optional[str] = None
    ) -> Optional[ProductListing]:
        """Match by (retailer, canonical URL) first, then by (retailer, SKU)."""
        with self.session_factory() as db:
            base = db.query(ProductListingRecord).filter(ProductListingRecord.retailer_id == retailer_id)
            row = None
            if url:
                row = base.filter(ProductListingRecord.url == url).first()
            if row is None and sku:
                row = base.filter(ProductListingRecord.retailer_sku == sku).first()
            return listing_from_record(row) if row is not None else None

    def recent_observations(
        self, listing_id: str, since: Optional[datetime] = None, limit: int = 10, exclude_rejected: bool = False
    ) -> List[PriceObservation]:
        """Newest first; rejected rows are skipped before the limit applies when asked."""
        with self.session_factory() as db:
            query = db.query(PriceHistoryRecord).filter(PriceHistoryRecord.listing_id == listing_id)
            if since is not None:
                query = query.filter(PriceHistoryRecord.recorded_at >= since)
            if exclude_rejected:
                query = query.filter(PriceHistoryRecord.verdict != Verdict.REJECTED.value)
            rows = query.order_by(PriceHistoryRecord.recorded_at.desc()).limit(limit).all()
            return [observation_from_record(row) for row in rows]

    def sibling_prices(self, variant_key: Optional[str], exclude_listing_id: str) -> List[Decimal]:
        """Current prices of the same variant at other retailers."""
        if not variant_key:
            return []
        with self.session_factory() as db:
            rows = (
                db.query(ProductListingRecord.last_known_price)
                .filter(
                    ProductListingRecord.variant_key == variant_key,
                    ProductListingRecord.id != exclude_listing_id,
                    ProductListingRecord.is_active.is_(True),
                    ProductListingRecord.last_known_price.isnot(None),
                )
                .all()
            )
            return [Decimal(str(price)) for (price,) in rows]

    def load_retailers(self, active_only: bool = True) -> List[Retailer]:
        with self.session_factory() as db:
            query = db.query(RetailerRecord)
            if active_only:
                query = query.filter(RetailerRecord.is_active.is_(True))
            return [retailer_from_record(row) for row in query.order_by(RetailerRecord.id).all()]

    def load_category_configs(self) -> Dict[str, CategoryScrapeConfig]:
        with self.session_factory() as db:
            rows = db.query(CategoryConfigRecord).filter(CategoryConfigRecord.is_active.is_(True)).all()
            return {
                row.category: CategoryScrapeConfig(
                    category=row.category,
                    default_interval_hours=row.default_interval_hours,
                    sale_period_interval_hours=row.sale_period_interval_hours,
                    high_demand_interval_hours=row.high_demand_interval_hours,
                    price_change_threshold_percent=row.price_change_threshold_percent,
                    high_demand=row.high_demand,
                    is_active=row.is_active,
                )
                for row in rows
            }

    def save_discovery_request(self, request: DiscoveryRequest) -> None:
        with self.session_factory() as db:
            row = db.get(DiscoveryRequestRecord, request.id)
            if row is None:
                row = DiscoveryRequestRecord(id=request.id)
                db.add(row)
            row.requester_id = request.requester_id
            row.query = request.query
            row.target_retailers = list(request.target_retailers)
            row.status = request.status.value
            row.requested_at = request.requested_at
            row.started_at = request.started_at
            row.completed_at = request.completed_at
            row.listing_ids = list(request.listing_ids)
            row.retailer_results = {
                retailer_id: {"listing_ids": list(result.listing_ids), "error": result.error}
                for retailer_id, result in request.retailer_results.items()
            }
            row.error = request.error
            db.commit()

    def get_discovery_request(self, request_id: str) -> Optional[DiscoveryRequest]:
        with self.session_factory() as db:
            row = db.get(DiscoveryRequestRecord, request_id)
            return _discovery_from_record(row) if row is not None else None

    def list_listings(self, retailer_id: Optional[str] = None, limit: int = 100) -> List[ProductListing]:
        with self.session_factory() as db:
            query = db.query(ProductListingRecord)
            if retailer_id:
                query = query.filter(ProductListingRecord.retailer_id == retailer_id)
            rows = query.order_by(ProductListingRecord.created_at.desc()).limit(limit).all()
            return [listing_from_record(row) for row in rows]
