import logging
import re
import threading
from decimal import Decimal, InvalidOperation
from typing import Dict, Optional
from urllib.parse import urlsplit, urlunsplit

import requests
from bs4 import BeautifulSoup

from core.domain import FailureKind, Identity, StockStatus
from core.exceptions import FetchError

# Phrases that only show up on bot-detection / challenge pages.
BLOCK_MARKERS = (
    "captcha",
    "robot check",
    "are you a robot",
    "verify you are human",
    "unusual traffic",
    "access denied",
    "request blocked",
)

SNIPPET_LENGTH = 500
# Challenge pages are a few kilobytes; product pages run to hundreds.
CHALLENGE_PAGE_MAX_CHARS = 20_000

_TITLE = re.compile(r"<title[^>]*>(.*?)</title>", re.IGNORECASE | re.DOTALL)
_PRICE_NUMBER = re.compile(r"\d+(?:\.\d+)?")
_WEIGHT = re.compile(r"(\d+(?:\.\d+)?)\s*(kg|kgs|g|gm|gms|grams?|lb|lbs)\b", re.IGNORECASE)
_GRAMS_PER_UNIT = {
    "kg": 1000.0, "kgs": 1000.0,
    "g": 1.0, "gm": 1.0, "gms": 1.0, "gram": 1.0, "grams": 1.0,
    "lb": 453.592, "lbs": 453.592,
}


class WebFetcher:
    """HTTP + HTML helper shared by the retailer fetchers.

    This class wraps requests and BeautifulSoup with what every retailer
    integration needs: per-request identity (user agent and proxy), a caller
    supplied timeout, and classification of anything that goes wrong into a
    ``FailureKind`` instead of a bare exception.

    Sessions are kept per thread because workers share fetchers and
    ``requests.Session`` is not thread-safe.
    """

    DEFAULT_HEADERS = {
        "Accept": "text/html,application/xhtml+xml,application/xml",
        "Accept-Language": "en-IN,en;q=0.9",
    }

    def __init__(self, name: str):
        """Initialize the fetcher.

        Args:
            name: Retailer identifier, used for logging
        """
        self.name = name
        self._local = threading.local()
        self.logger = logging.getLogger(f"scraper.{name}")

    @property
    def session(self) -> requests.Session:
        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            session.headers.update(self.DEFAULT_HEADERS)
            self._local.session = session
        return session

    def get_page(
        self,
        url: str,
        identity: Identity,
        timeout: float,
        params: Optional[Dict] = None,
    ) -> BeautifulSoup:
        """Fetch a page and parse it with BeautifulSoup.

        Args:
            url: URL to fetch
            identity: User agent and proxy to present
            timeout: Request timeout in seconds
            params: Optional query parameters

        Returns:
            BeautifulSoup object for HTML parsing

        Raises:
            FetchError: with the failure classified
        """
        self.logger.info("Fetching %s", url)

        try:
            response = self.session.get(
                url,
                params=params,
                headers={"User-Agent": identity.user_agent},
                proxies=identity.proxies(),
                timeout=timeout,
            )
        except requests.exceptions.Timeout as e:
            raise FetchError(FailureKind.NETWORK_TIMEOUT, f"Timeout fetching {url}: {e}") from e
        except requests.exceptions.RequestException as e:
            raise FetchError(FailureKind.NETWORK_ERROR, f"Error fetching {url}: {e}") from e

        self.classify_response(url, response.status_code, response.text)
        return BeautifulSoup(response.text, "lxml")

    def classify_response(self, url: str, status_code: int, text: str) -> None:
        """Raise a classified ``FetchError`` for responses that carry no usable page."""
        snippet = text[:SNIPPET_LENGTH] if text else None

        if status_code == 429:
            raise FetchError(FailureKind.RATE_LIMITED, f"HTTP 429 for {url}", status_code)

        if status_code == 403 or looks_blocked(text, status_code):
            self.logger.warning("Detected CAPTCHA or robot check page at %s", url)
            raise FetchError(
                FailureKind.BLOCKED, f"Bot challenge at {url}", status_code, snippet
            )

        if status_code in (404, 410):
            raise FetchError(
                FailureKind.EXTRACTION_FAILURE, f"HTTP {status_code}: page gone at {url}", status_code, snippet
            )

        if status_code >= 400:
            raise FetchError(FailureKind.NETWORK_ERROR, f"HTTP {status_code} for {url}", status_code)

    def extract_price(self, price_text: str, url: str = "", snippet: Optional[str] = None) -> Decimal:
        """Extract a numerical price from text.

        Args:
            price_text: String containing a price (e.g., "₹2,499.00")

        Returns:
            Decimal value of the price

        Raises:
            FetchError: ``extraction_failure`` if no number can be read
        """
        clean_price = price_text.replace(",", "")
        for token in ("₹", "Rs.", "Rs", "INR", "$", "£", "€"):
            clean_price = clean_price.replace(token, " ")

        match = _PRICE_NUMBER.search(clean_price)
        if not match:
            self.logger.warning("Could not parse price: %s", price_text)
            raise FetchError(
                FailureKind.EXTRACTION_FAILURE, f"Malformed price '{price_text}' at {url}", snippet=snippet
            )
        try:
            return Decimal(match.group(0))
        except InvalidOperation as e:
            raise FetchError(
                FailureKind.EXTRACTION_FAILURE, f"Malformed price '{price_text}' at {url}", snippet=snippet
            ) from e


def _has_marker(text: str) -> bool:
    lowered = text.lower()
    return any(marker in lowered for marker in BLOCK_MARKERS)


def looks_blocked(text: Optional[str], status_code: int = 200) -> bool:
    """True for bot-challenge pages.

    Full product pages mention "captcha" in scripts and help text, so a
    successful response is only scanned through its ``<title>`` unless the
    body is small enough to be a challenge page.
    """
    if not text:
        return False
    title = _TITLE.search(text)
    if title and _has_marker(title.group(1)):
        return True
    if status_code in (403, 503) or len(text) <= CHALLENGE_PAGE_MAX_CHARS:
        return _has_marker(text)
    return False


def parse_stock_status(text: Optional[str]) -> StockStatus:
    if text is None:
        return StockStatus.IN_STOCK
    lowered = text.strip().lower()
    if "out of stock" in lowered or "unavailable" in lowered or "sold out" in lowered:
        return StockStatus.OUT_OF_STOCK
    if "only" in lowered and "left" in lowered:
        return StockStatus.LIMITED
    if "in stock" in lowered or "available" in lowered:
        return StockStatus.IN_STOCK
    return StockStatus.UNKNOWN


def parse_weight_grams(text: Optional[str]) -> Optional[int]:
    """Normalise a pack size found in text ("2 kg", "5lb", "907g") to grams."""
    if not text:
        return None
    match = _WEIGHT.search(text)
    if not match:
        return None
    value = float(match.group(1))
    return int(round(value * _GRAMS_PER_UNIT[match.group(2).lower()]))


def canonical_url(url: str) -> str:
    """Lowercase scheme and host, drop query and fragment and the trailing slash."""
    parts = urlsplit(url.strip())
    path = parts.path.rstrip("/") or "/"
    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), path, "", ""))
