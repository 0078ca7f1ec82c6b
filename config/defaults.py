"""Seed configuration loaded by ``cli.py init --seed``.

Retailer limits stay well under what the sites tolerate; the static
retailer serves the built-in catalogue and is only useful for demos.
"""

from decimal import Decimal

from core.domain import CategoryScrapeConfig, Retailer, ValidationRule

DEFAULT_RETAILERS = [
    Retailer(
        id="amazon",
        name="Amazon India",
        website_url="https://www.amazon.in",
        search_url_template="https://www.amazon.in/s?k={query}",
        requests_per_minute=15,
        requests_per_hour=600,
    ),
    Retailer(
        id="flipkart",
        name="Flipkart",
        website_url="https://www.flipkart.com",
        search_url_template="https://www.flipkart.com/search?q={query}",
        requests_per_minute=12,
        requests_per_hour=500,
    ),
    Retailer(
        id="healthkart",
        name="HealthKart",
        website_url="https://www.healthkart.com",
        search_url_template="https://www.healthkart.com/search?txtQ={query}",
        requests_per_minute=10,
        requests_per_hour=400,
    ),
    Retailer(
        id="nutrabay",
        name="Nutrabay",
        website_url="https://nutrabay.com",
        search_url_template="https://nutrabay.com/?s={query}&post_type=product",
        requests_per_minute=8,
        requests_per_hour=300,
    ),
    Retailer(
        id="static",
        name="Static Demo Catalogue",
        website_url="http://example.com",
        requests_per_minute=60,
        requests_per_hour=3600,
        min_delay_seconds=0.0,
        use_proxy_rotation=False,
        use_user_agent_rotation=False,
    ),
]

DEFAULT_CATEGORY_CONFIGS = [
    CategoryScrapeConfig(category="whey_protein"),
    CategoryScrapeConfig(category="whey_isolate"),
    CategoryScrapeConfig(category="mass_gainer", default_interval_hours=48.0),
]

# Whey rarely sells for less than 1 INR or more than 20 INR per gram.
DEFAULT_VALIDATION_RULES = [
    ValidationRule(
        category=None,
        min_price_per_gram=Decimal("1.0"),
        max_price_per_gram=Decimal("20.0"),
    ),
]
