# This file defines the contract every retailer fetcher implements
# and the values a fetch or a search hands back to the engine

from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional, Protocol

from core.domain import Identity, StockStatus


@dataclass
class FetchResult:
    """Price and stock extracted from one product page."""

    url: str
    price: Decimal
    stock_status: StockStatus = StockStatus.UNKNOWN
    currency: str = "INR"
    title: Optional[str] = None
    sku: Optional[str] = None
    weight_grams: Optional[int] = None


@dataclass
class SearchCandidate:
    """A product found on a retailer's search page."""

    title: str
    url: str
    price: Optional[Decimal] = None
    sku: Optional[str] = None
    weight_grams: Optional[int] = None


class RetailerFetcher(Protocol):
    """Capability every retailer integration provides.

    The engine never cares how a retailer's pages are laid out. It hands a
    fetcher a URL (or a search query), the identity to present and a timeout,
    and gets back either structured data or a ``FetchError`` whose ``kind``
    says what went wrong:

    - ``rate_limited``: HTTP 429 or an explicit throttling page
    - ``network_timeout`` / ``network_error``: transport problems and 5xx
    - ``blocked``: CAPTCHA or bot-detection page, HTTP 403
    - ``extraction_failure``: page loaded but the expected fields were
      missing or malformed

    Fetchers never retry on their own. Retry policy belongs to the scheduler,
    so one failure is one attempt.
    """

    retailer_id: str

    def fetch(self, url: str, identity: Identity, timeout: float) -> FetchResult:
        """Fetch a product page and extract its price.

        Args:
            url: Canonical product URL
            identity: Proxy and user agent to present
            timeout: Seconds before the request is abandoned

        Raises:
            FetchError: classified failure
        """
        ...

    def search(self, query: str, identity: Identity, timeout: float) -> List[SearchCandidate]:
        """Run a search on the retailer and return candidate products.

        Raises:
            FetchError: classified failure
        """
        ...
