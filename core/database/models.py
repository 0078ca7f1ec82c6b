# This file defines the database schema for the engine using SQLAlchemy's Object Relational Mapper (ORM)
# It stores retailer configuration, product listings, their append-only price history and discovery requests

import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

from core.domain import utcnow

# Create a base class for all ORM models
Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


class RetailerRecord(Base):
    """Scraping parameters for one retailer.

    Rate limits and intervals are read by the config loader at startup and on
    every refresh, so editing a row changes engine behaviour without a restart.
    """
    __tablename__ = "retailers"

    # Slug such as "amazon"; also the key of the fetcher registry
    id = Column(String(50), primary_key=True)
    name = Column(String(100), nullable=False)
    website_url = Column(String(255), nullable=False)
    search_url_template = Column(String(512), nullable=True)

    # Published throughput limits and the floor between two requests
    requests_per_minute = Column(Integer, default=10, nullable=False)
    requests_per_hour = Column(Integer, default=300, nullable=False)
    min_delay_seconds = Column(Float, default=2.0, nullable=False)

    use_proxy_rotation = Column(Boolean, default=True, nullable=False)
    use_user_agent_rotation = Column(Boolean, default=True, nullable=False)

    # Circuit breaker opens above this trailing failure rate
    max_failure_rate_percent = Column(Float, default=15.0, nullable=False)

    scrape_interval_hours = Column(Float, default=24.0, nullable=False)
    sale_interval_hours = Column(Float, default=6.0, nullable=False)
    sale_period_active = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False, index=True)

    listings = relationship("ProductListingRecord", back_populates="retailer")


class ProductListingRecord(Base):
    """A product variant as sold by one retailer, identified by its canonical URL.

    Listings are never deleted. A listing that keeps failing is deactivated
    instead so its price history stays intact.
    """
    __tablename__ = "product_listings"
    __table_args__ = (UniqueConstraint("retailer_id", "url", name="uq_listing_retailer_url"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    retailer_id = Column(String(50), ForeignKey("retailers.id"), nullable=False, index=True)
    url = Column(String(1024), nullable=False)

    # Normalised title + pack size; listings sharing it are the same variant at different retailers
    variant_key = Column(String(255), nullable=True, index=True)
    retailer_sku = Column(String(100), nullable=True, index=True)
    title = Column(String(512), nullable=True)
    category = Column(String(100), nullable=True, index=True)
    weight_grams = Column(Integer, nullable=True)
    currency = Column(String(3), default="INR", nullable=False)

    # Only ever set from a valid observation; last_price_at decides which write wins
    last_known_price = Column(Numeric(12, 2), nullable=True)
    last_price_at = Column(DateTime, nullable=True)

    last_scraped_at = Column(DateTime, nullable=True)
    consecutive_failures = Column(Integer, default=0, nullable=False)
    stock_status = Column(String(20), default="unknown", nullable=False)
    validation_status = Column(String(20), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    retailer = relationship("RetailerRecord", back_populates="listings")
    observations = relationship("PriceHistoryRecord", back_populates="listing")


class PriceHistoryRecord(Base):
    """Append-only price observations, including rejected ones for audit.

    The (listing_id, recorded_at) pair is unique, so writing the same
    observation twice after a retry leaves a single row.
    """
    __tablename__ = "price_history"
    __table_args__ = (UniqueConstraint("listing_id", "recorded_at", name="uq_price_listing_time"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    listing_id = Column(String(36), ForeignKey("product_listings.id"), nullable=False, index=True)
    price = Column(Numeric(12, 2), nullable=False)
    previous_price = Column(Numeric(12, 2), nullable=True)
    change_amount = Column(Numeric(12, 2), nullable=True)
    change_percent = Column(Numeric(8, 2), nullable=True)
    currency = Column(String(3), default="INR", nullable=False)
    stock_status = Column(String(20), default="unknown", nullable=False)
    verdict = Column(String(20), nullable=False, index=True)
    confidence = Column(Float, nullable=False)
    reasons = Column(JSON, nullable=True)
    source = Column(String(50), default="scraper", nullable=False)
    recorded_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    listing = relationship("ProductListingRecord", back_populates="observations")


class DiscoveryRequestRecord(Base):
    """A user search fanned out across retailers."""
    __tablename__ = "discovery_requests"

    id = Column(String(36), primary_key=True, default=_uuid)
    requester_id = Column(String(36), nullable=True, index=True)
    query = Column(String(512), nullable=False)
    target_retailers = Column(JSON, nullable=False, default=list)
    status = Column(String(20), default="pending", nullable=False, index=True)
    requested_at = Column(DateTime, default=utcnow, nullable=False)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    listing_ids = Column(JSON, nullable=False, default=list)
    # {"amazon": {"listing_ids": [...], "error": null}, ...}
    retailer_results = Column(JSON, nullable=False, default=dict)
    error = Column(String(1024), nullable=True)


class ValidationRuleRecord(Base):
    """Price sanity bounds. A NULL category is the global fallback rule."""
    __tablename__ = "validation_rules"

    id = Column(Integer, primary_key=True, autoincrement=True)
    category = Column(String(100), nullable=True, unique=True)
    min_price_multiplier = Column(Numeric(6, 3), default=0.1, nullable=False)
    max_price_multiplier = Column(Numeric(6, 3), default=10.0, nullable=False)
    min_price_per_gram = Column(Numeric(8, 3), nullable=True)
    max_price_per_gram = Column(Numeric(8, 3), nullable=True)
    max_price_change_percent_daily = Column(Numeric(6, 2), default=50.0, nullable=False)


class CategoryConfigRecord(Base):
    """Refresh intervals per product category."""
    __tablename__ = "category_scraping_configs"

    category = Column(String(100), primary_key=True)
    default_interval_hours = Column(Float, default=24.0, nullable=False)
    sale_period_interval_hours = Column(Float, default=6.0, nullable=False)
    high_demand_interval_hours = Column(Float, default=12.0, nullable=False)
    price_change_threshold_percent = Column(Float, default=10.0, nullable=False)
    high_demand = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
