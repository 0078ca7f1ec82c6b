import os
from functools import lru_cache
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


class Settings:
    """Application settings loaded from environment variables with defaults.

    This centralized configuration class follows the 12-factor app methodology
    by allowing configuration through environment variables, while providing
    sensible defaults for local development.
    """

    # Project metadata
    PROJECT_NAME = "Price Watch Engine"
    PROJECT_VERSION = "0.2.0"

    # Database Settings
    DB_HOST = os.getenv("DB_HOST", "localhost")
    DB_PORT = os.getenv("DB_PORT", "3306")
    DB_NAME = os.getenv("DB_NAME", "pricewatch")
    DB_USER = os.getenv("DB_USER", "user")
    DB_PASS = os.getenv("DB_PASSWORD", "password")

    # Worker pool
    WORKER_COUNT = _int("WORKER_COUNT", 8)
    LEASE_SECONDS = _float("LEASE_SECONDS", 120.0)
    FETCH_TIMEOUT_SECONDS = _float("FETCH_TIMEOUT_SECONDS", 20.0)
    SHUTDOWN_GRACE_SECONDS = _float("SHUTDOWN_GRACE_SECONDS", 30.0)
    IDLE_BACKOFF_MAX_SECONDS = _float("IDLE_BACKOFF_MAX_SECONDS", 5.0)

    # Admission and waiting
    MAX_RATE_WAIT_SECONDS = _float("MAX_RATE_WAIT_SECONDS", 30.0)
    IMMEDIATE_SCRAPE_WAIT_SECONDS = _float("IMMEDIATE_SCRAPE_WAIT_SECONDS", 45.0)

    # Periodic work
    CONFIG_REFRESH_SECONDS = _float("CONFIG_REFRESH_SECONDS", 300.0)
    REFRESH_TICK_SECONDS = _float("REFRESH_TICK_SECONDS", 60.0)

    # Retries
    DEFAULT_MAX_ATTEMPTS = _int("DEFAULT_MAX_ATTEMPTS", 3)
    RETRY_BASE_SECONDS = _float("RETRY_BASE_SECONDS", 60.0)
    RETRY_MAX_SECONDS = _float("RETRY_MAX_SECONDS", 3600.0)

    # Circuit breaker
    BREAKER_WINDOW = _int("BREAKER_WINDOW", 100)
    BREAKER_MIN_SAMPLES = _int("BREAKER_MIN_SAMPLES", 20)
    BREAKER_COOLDOWN_SECONDS = _float("BREAKER_COOLDOWN_SECONDS", 900.0)

    # Identity rotation
    PROXY_LIST = os.getenv("PROXY_LIST", "")
    IDENTITY_FAILURE_THRESHOLD = _int("IDENTITY_FAILURE_THRESHOLD", 3)
    IDENTITY_COOLDOWN_SECONDS = _float("IDENTITY_COOLDOWN_SECONDS", 600.0)

    # Listings and validation
    LISTING_DEACTIVATE_AFTER = _int("LISTING_DEACTIVATE_AFTER", 10)
    ALERT_MIN_CONFIDENCE = _float("ALERT_MIN_CONFIDENCE", 0.6)
    PRICE_CHANGE_THRESHOLD_PERCENT = _float("PRICE_CHANGE_THRESHOLD_PERCENT", 10.0)
    CONFIRMATION_TOLERANCE_PERCENT = _float("CONFIRMATION_TOLERANCE_PERCENT", 5.0)

    @property
    def DATABASE_URL(self) -> str:
        """SQLAlchemy connection string.

        ``DATABASE_URL`` from the environment wins; otherwise a MySQL URL is
        built from the ``DB_*`` parts.
        """
        override = os.getenv("DATABASE_URL")
        if override:
            return override
        return f"mysql+pymysql://{self.DB_USER}:{self.DB_PASS}@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"

    @property
    def proxies(self) -> list:
        """Proxy URLs from the comma-separated ``PROXY_LIST`` variable."""
        return [p.strip() for p in self.PROXY_LIST.split(",") if p.strip()]


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()


# For direct access in other modules
settings = get_settings()
