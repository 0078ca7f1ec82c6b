from decimal import Decimal
from typing import Dict, List, Optional

from core.domain import FailureKind, Identity, StockStatus
from core.exceptions import FetchError
from core.scrapers.base import FetchResult, SearchCandidate
from core.scrapers.web_fetcher import canonical_url, parse_weight_grams

STATIC_CATALOG = [
    {
        "name": "Optimum Nutrition Gold Standard 100% Whey Double Rich Chocolate 2kg",
        "price": Decimal("6299.00"),
        "url": "http://example.com/product1",
        "sku": "ON-GSW-DRC-2KG",
    },
    {
        "name": "MuscleBlaze Biozyme Performance Whey Rich Milk Chocolate 1kg",
        "price": Decimal("2899.00"),
        "url": "http://example.com/product2",
        "sku": "MB-BIO-RMC-1KG",
    },
    {
        "name": "Dymatize ISO100 Hydrolyzed Whey Isolate Gourmet Vanilla 2.27kg",
        "price": Decimal("9499.00"),
        "url": "http://example.com/product3",
        "sku": "DY-ISO-GV-227",
    },
    {
        "name": "The Whole Truth Whey Protein Coffee Cocoa 1kg",
        "price": Decimal("3499.00"),
        "url": "http://example.com/product4",
        "sku": "TWT-WP-CC-1KG",
    },
    {
        "name": "BSN Syntha-6 Whey Protein Chocolate Milkshake 5lb",
        "price": Decimal("5799.00"),
        "url": "http://example.com/product5",
        "sku": "BSN-S6-CM-5LB",
    },
]


class StaticFetcher:
    """A fetcher that serves a fixed in-memory catalogue (for demos and testing).

    Prices can be changed with ``set_price`` to simulate a retailer repricing.
    """

    def __init__(self, retailer_id: str = "static", catalog: Optional[List[Dict]] = None):
        self.retailer_id = retailer_id
        self._items = {
            canonical_url(item["url"]): dict(item) for item in (catalog or STATIC_CATALOG)
        }

    def set_price(self, url: str, price: Decimal) -> None:
        self._items[canonical_url(url)]["price"] = price

    def fetch(self, url: str, identity: Identity, timeout: float) -> FetchResult:
        item = self._items.get(canonical_url(url))
        if item is None:
            raise FetchError(FailureKind.EXTRACTION_FAILURE, f"HTTP 404: page gone at {url}", 404)
        return FetchResult(
            url=url,
            price=item["price"],
            stock_status=item.get("stock_status", StockStatus.IN_STOCK),
            title=item["name"],
            sku=item.get("sku"),
            weight_grams=parse_weight_grams(item["name"]),
        )

    def search(self, query: str, identity: Identity, timeout: float) -> List[SearchCandidate]:
        terms = [t for t in query.lower().split() if t]
        if not terms:
            return []
        results = []
        for url, item in self._items.items():
            name = item["name"].lower()
            if all(term in name for term in terms):
                results.append(
                    SearchCandidate(
                        title=item["name"],
                        url=url,
                        price=item["price"],
                        sku=item.get("sku"),
                        weight_grams=parse_weight_grams(item["name"]),
                    )
                )
        return results
