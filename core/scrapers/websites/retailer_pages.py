"""Page layouts of the supported retailers.

Each retailer is described by a ``RetailerPageSpec`` value (selectors,
search URL, URL canonicalisation). A single ``HtmlRetailerFetcher``
executes any spec, so adding a retailer means adding a value here and
registering it, not writing a new class.
"""

import re
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple
from urllib.parse import quote_plus, urljoin

from bs4 import BeautifulSoup

from core.domain import FailureKind, Identity
from core.exceptions import FetchError
from core.scrapers.base import FetchResult, SearchCandidate
from core.scrapers.web_fetcher import (
    SNIPPET_LENGTH,
    WebFetcher,
    canonical_url,
    parse_stock_status,
    parse_weight_grams,
)


def _no_sku(url: str) -> Optional[str]:
    return None


@dataclass(frozen=True)
class RetailerPageSpec:
    retailer_id: str
    base_url: str
    title_selectors: Tuple[str, ...]
    price_selectors: Tuple[str, ...]
    availability_selectors: Tuple[str, ...] = ()
    search_url: Optional[str] = None
    result_item_selector: str = ""
    result_link_selector: str = "a"
    result_title_selector: Optional[str] = None
    result_price_selector: Optional[str] = None
    max_results: int = 10
    currency: str = "INR"
    canonicalize: Callable[[str], str] = canonical_url
    sku_from_url: Callable[[str], Optional[str]] = _no_sku


def amazon_asin(url: str) -> Optional[str]:
    """Extract the Amazon product ID (ASIN) from the URL."""
    patterns = [
        r"/dp/([A-Z0-9]{10})",
        r"/gp/product/([A-Z0-9]{10})",
        r"/ASIN/([A-Z0-9]{10})",
    ]
    for pattern in patterns:
        match = re.search(pattern, url)
        if match:
            return match.group(1)
    return None


def amazon_canonical_url(url: str) -> str:
    asin = amazon_asin(url)
    if asin:
        return f"https://www.amazon.in/dp/{asin}"
    return canonical_url(url)


def flipkart_item_id(url: str) -> Optional[str]:
    match = re.search(r"/p/(itm[0-9a-zA-Z]+)", url)
    return match.group(1) if match else None


def healthkart_variant_id(url: str) -> Optional[str]:
    match = re.search(r"/(SP-\d+)", url)
    return match.group(1) if match else None


AMAZON = RetailerPageSpec(
    retailer_id="amazon",
    base_url="https://www.amazon.in",
    title_selectors=("#productTitle", "#title", ".product-title-word-break"),
    price_selectors=(
        ".a-price .a-offscreen",
        "#priceblock_ourprice",
        "#priceblock_dealprice",
        ".a-price",
    ),
    availability_selectors=("#availability",),
    search_url="https://www.amazon.in/s?k={query}",
    result_item_selector="div.s-result-item[data-asin]",
    result_link_selector="h2 a",
    result_title_selector="h2",
    result_price_selector=".a-price .a-offscreen",
    canonicalize=amazon_canonical_url,
    sku_from_url=amazon_asin,
)

FLIPKART = RetailerPageSpec(
    retailer_id="flipkart",
    base_url="https://www.flipkart.com",
    title_selectors=("span.B_NuCI", "span.VU-ZEz", "h1 span"),
    price_selectors=("div.Nx9bqj.CxhGGd", "div._30jeq3._16Jk6d", "div._30jeq3"),
    availability_selectors=("div._16FRp0", "div.Z8JjpR"),
    search_url="https://www.flipkart.com/search?q={query}",
    result_item_selector="div[data-id]",
    result_link_selector="a[href*='/p/']",
    result_title_selector="a.wjcEIp, a.s1Q9rs, div._4rR01T",
    result_price_selector="div.Nx9bqj, div._30jeq3",
    sku_from_url=flipkart_item_id,
)

HEALTHKART = RetailerPageSpec(
    retailer_id="healthkart",
    base_url="https://www.healthkart.com",
    title_selectors=("h1.variant-name", "h1"),
    price_selectors=("span.variant-offer-price", "[class*='offer-price']"),
    availability_selectors=("[class*='stock-status']", "div.out-of-stock"),
    search_url="https://www.healthkart.com/search?txtQ={query}",
    result_item_selector="[class*='variant-tile']",
    result_link_selector="a",
    result_title_selector="[class*='variant-name']",
    result_price_selector="[class*='offer-price']",
    sku_from_url=healthkart_variant_id,
)

NUTRABAY = RetailerPageSpec(
    retailer_id="nutrabay",
    base_url="https://nutrabay.com",
    title_selectors=("h1.product_title", "h1"),
    price_selectors=("p.price ins .amount", "p.price .amount", "span.price .amount"),
    availability_selectors=("p.stock",),
    search_url="https://nutrabay.com/?s={query}&post_type=product",
    result_item_selector="li.product",
    result_link_selector="a.woocommerce-LoopProduct-link",
    result_title_selector="h2.woocommerce-loop-product__title",
    result_price_selector=".price ins .amount, .price .amount",
)

PAGE_SPECS: Dict[str, RetailerPageSpec] = {
    spec.retailer_id: spec for spec in (AMAZON, FLIPKART, HEALTHKART, NUTRABAY)
}


def _select_first(soup: BeautifulSoup, selectors: Tuple[str, ...]):
    for selector in selectors:
        element = soup.select_one(selector)
        if element is not None:
            return element
    return None


class HtmlRetailerFetcher:
    """Fetch executor for any retailer described by a ``RetailerPageSpec``."""

    def __init__(self, spec: RetailerPageSpec, web: Optional[WebFetcher] = None):
        self.spec = spec
        self.retailer_id = spec.retailer_id
        self.web = web or WebFetcher(spec.retailer_id)
        self.logger = self.web.logger

    def fetch(self, url: str, identity: Identity, timeout: float) -> FetchResult:
        soup = self.web.get_page(url, identity, timeout)
        snippet = soup.get_text(" ", strip=True)[:SNIPPET_LENGTH]

        price_element = _select_first(soup, self.spec.price_selectors)
        if price_element is None:
            self.logger.warning("Could not find price for %s; page starts: %s", url, snippet[:200])
            raise FetchError(
                FailureKind.EXTRACTION_FAILURE, f"Price selector not found at {url}", snippet=snippet
            )
        price = self.web.extract_price(price_element.get_text(strip=True), url, snippet)

        title_element = _select_first(soup, self.spec.title_selectors)
        title = title_element.get_text(" ", strip=True) if title_element else None

        availability_element = _select_first(soup, self.spec.availability_selectors)
        stock_status = parse_stock_status(
            availability_element.get_text(" ", strip=True) if availability_element else None
        )

        self.logger.debug("Extracted price %s (%s) from %s", price, stock_status.value, url)
        return FetchResult(
            url=url,
            price=price,
            stock_status=stock_status,
            currency=self.spec.currency,
            title=title,
            sku=self.spec.sku_from_url(url),
            weight_grams=parse_weight_grams(title),
        )

    def search(self, query: str, identity: Identity, timeout: float) -> List[SearchCandidate]:
        if not self.spec.search_url:
            return []
        search_url = self.spec.search_url.format(query=quote_plus(query))
        soup = self.web.get_page(search_url, identity, timeout)

        candidates = []
        for item in soup.select(self.spec.result_item_selector)[: self.spec.max_results]:
            link = item.select_one(self.spec.result_link_selector)
            if link is None or not link.get("href"):
                continue
            href = urljoin(self.spec.base_url, link["href"])

            title_element = (
                item.select_one(self.spec.result_title_selector)
                if self.spec.result_title_selector else None
            ) or link
            title = title_element.get_text(" ", strip=True)
            if not title:
                continue

            price = None
            if self.spec.result_price_selector:
                price_element = item.select_one(self.spec.result_price_selector)
                if price_element is not None:
                    try:
                        price = self.web.extract_price(price_element.get_text(strip=True), href)
                    except FetchError:
                        price = None

            candidates.append(
                SearchCandidate(
                    title=title,
                    url=self.spec.canonicalize(href),
                    price=price,
                    sku=self.spec.sku_from_url(href),
                    weight_grams=parse_weight_grams(title),
                )
            )

        self.logger.info("Search '%s' on %s returned %d candidates", query, self.retailer_id, len(candidates))
        return candidates
