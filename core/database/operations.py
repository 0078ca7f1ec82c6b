# This file contains the database access layer that handles connections to the database,
# schema creation and seeding of the default retailer configuration

import logging

import pymysql
import sqlalchemy.exc
from sqlalchemy import create_engine, text
from sqlalchemy.engine import make_url
from sqlalchemy.orm import sessionmaker

from config.settings import get_settings
from .models import Base, CategoryConfigRecord, RetailerRecord, ValidationRuleRecord

logger = logging.getLogger(__name__)

# Get application settings
settings = get_settings()


def build_engine(url: str):
    """Create an engine; SQLite connections are shared with worker threads."""
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_engine(url, connect_args=connect_args, pool_pre_ping=not url.startswith("sqlite"))


# Database Connection Setup
# The engine is the low-level interface to the database that handles the connection pool
engine = build_engine(settings.DATABASE_URL)

# Session Factory
# Each repository call opens its own short session; nothing spans fetch and persist
SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)


def ensure_database_exists():
    """Ensure that the database exists before attempting operations.

    Only MySQL databases are created on the fly; any other backend must
    already be reachable.
    """
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return
    except sqlalchemy.exc.OperationalError as e:
        if "Unknown database" not in str(e) or not engine.url.drivername.startswith("mysql"):
            logger.error("Database connection error: %s", e)
            raise

    url = make_url(settings.DATABASE_URL)
    try:
        connection = pymysql.connect(
            host=url.host or settings.DB_HOST,
            user=url.username or settings.DB_USER,
            password=url.password or settings.DB_PASS,
            port=int(url.port or settings.DB_PORT),
        )
    except pymysql.Error as conn_err:
        logger.error("Failed to connect to MySQL server: %s", conn_err)
        raise

    try:
        with connection.cursor() as cursor:
            cursor.execute(f"CREATE DATABASE IF NOT EXISTS `{url.database}`")
        logger.info("Created database '%s'", url.database)
    except pymysql.Error as db_err:
        logger.error("Failed to create database: %s", db_err)
        raise
    finally:
        connection.close()


def init_db():
    """Create database tables if they don't exist.

    In a production environment you would typically use migrations (Alembic)
    instead of creating tables directly.
    """
    ensure_database_exists()
    Base.metadata.create_all(bind=engine)


def seed_defaults(db, retailers, category_configs, validation_rules) -> int:
    """Insert seed configuration rows that are not present yet.

    Existing rows are left alone so operator edits survive a re-seed.

    Returns:
        Number of rows inserted
    """
    inserted = 0

    for retailer in retailers:
        if db.get(RetailerRecord, retailer.id) is None:
            db.add(
                RetailerRecord(
                    id=retailer.id,
                    name=retailer.name,
                    website_url=retailer.website_url,
                    search_url_template=retailer.search_url_template,
                    requests_per_minute=retailer.requests_per_minute,
                    requests_per_hour=retailer.requests_per_hour,
                    min_delay_seconds=retailer.min_delay_seconds,
                    use_proxy_rotation=retailer.use_proxy_rotation,
                    use_user_agent_rotation=retailer.use_user_agent_rotation,
                    max_failure_rate_percent=retailer.max_failure_rate_percent,
                    scrape_interval_hours=retailer.scrape_interval_hours,
                    sale_interval_hours=retailer.sale_interval_hours,
                    sale_period_active=retailer.sale_period_active,
                    is_active=retailer.is_active,
                )
            )
            inserted += 1

    for config in category_configs:
        if db.get(CategoryConfigRecord, config.category) is None:
            db.add(
                CategoryConfigRecord(
                    category=config.category,
                    default_interval_hours=config.default_interval_hours,
                    sale_period_interval_hours=config.sale_period_interval_hours,
                    high_demand_interval_hours=config.high_demand_interval_hours,
                    price_change_threshold_percent=config.price_change_threshold_percent,
                    high_demand=config.high_demand,
                    is_active=config.is_active,
                )
            )
            inserted += 1

    for rule in validation_rules:
        query = db.query(ValidationRuleRecord)
        if rule.category is None:
            query = query.filter(ValidationRuleRecord.category.is_(None))
        else:
            query = query.filter(ValidationRuleRecord.category == rule.category)
        if query.first() is None:
            db.add(
                ValidationRuleRecord(
                    category=rule.category,
                    min_price_multiplier=rule.min_price_multiplier,
                    max_price_multiplier=rule.max_price_multiplier,
                    min_price_per_gram=rule.min_price_per_gram,
                    max_price_per_gram=rule.max_price_per_gram,
                    max_price_change_percent_daily=rule.max_price_change_percent_daily,
                )
            )
            inserted += 1

    db.commit()
    logger.info("Seeded %d configuration rows", inserted)
    return inserted
