from typing import Dict, Iterable, Optional

from core.exceptions import UnknownRetailer
from core.scrapers.base import RetailerFetcher
from core.scrapers.websites.retailer_pages import PAGE_SPECS, HtmlRetailerFetcher
from core.scrapers.websites.static_fetcher import StaticFetcher


class FetcherRegistry:
    """Lookup table from retailer id to the fetcher that serves it.

    The engine asks the registry for a fetcher by retailer id instead of
    knowing which class handles which website. Registering a new retailer is
    one ``register`` call.
    """

    def __init__(self, fetchers: Optional[Iterable[RetailerFetcher]] = None):
        self._fetchers: Dict[str, RetailerFetcher] = {}
        for fetcher in fetchers or ():
            self.register(fetcher)

    def register(self, fetcher: RetailerFetcher) -> None:
        self._fetchers[fetcher.retailer_id] = fetcher

    def get(self, retailer_id: str) -> RetailerFetcher:
        """Return the fetcher for a retailer.

        Raises:
            UnknownRetailer: if nothing is registered under ``retailer_id``
        """
        fetcher = self._fetchers.get(retailer_id)
        if fetcher is None:
            raise UnknownRetailer(retailer_id)
        return fetcher

    def __contains__(self, retailer_id: str) -> bool:
        return retailer_id in self._fetchers

    @classmethod
    def default(cls) -> "FetcherRegistry":
        """Registry with every known retailer page layout plus the static catalogue."""
        fetchers = [HtmlRetailerFetcher(spec) for spec in PAGE_SPECS.values()]
        fetchers.append(StaticFetcher("static"))
        return cls(fetchers)
