"""Tests for HTTP classification and HTML extraction of retailer pages."""

from decimal import Decimal
from unittest.mock import MagicMock

import pytest
import requests

from core.domain import FailureKind, Identity, StockStatus
from core.exceptions import FetchError, UnknownRetailer
from core.scrapers.fetcher_registry import FetcherRegistry
from core.scrapers.web_fetcher import WebFetcher, canonical_url, parse_stock_status, parse_weight_grams
from core.scrapers.websites.retailer_pages import (
    AMAZON,
    NUTRABAY,
    HtmlRetailerFetcher,
    amazon_asin,
    amazon_canonical_url,
    flipkart_item_id,
)

IDENTITY = Identity(user_agent="test-agent", proxy="http://proxy:8080")

AMAZON_PRODUCT = """
<html><body>
  <span id="productTitle"> Optimum Nutrition Gold Standard 100% Whey, 2 kg </span>
  <div class="a-price"><span class="a-offscreen">₹6,299.00</span></div>
  <div id="availability"><span>In stock</span></div>
</body></html>
"""

NUTRABAY_SEARCH = """
<html><body><ul>
  <li class="product">
    <a class="woocommerce-LoopProduct-link" href="/product/mb-biozyme-1kg/">
      <h2 class="woocommerce-loop-product__title">MuscleBlaze Biozyme Whey 1kg</h2>
    </a>
    <span class="price"><ins><span class="amount">₹2,899</span></ins></span>
  </li>
  <li class="product">
    <a class="woocommerce-LoopProduct-link" href="https://nutrabay.com/product/on-gsw-2lb/">
      <h2 class="woocommerce-loop-product__title">ON Gold Standard Whey 2lb</h2>
    </a>
  </li>
  <li class="product"><span>broken tile</span></li>
</ul></body></html>
"""


def response(status_code=200, text=""):
    resp = MagicMock()
    resp.status_code = status_code
    resp.text = text
    return resp


@pytest.fixture
def web():
    fetcher = WebFetcher("test")
    fetcher._local.session = MagicMock()
    return fetcher


class TestClassifyResponse:
    @pytest.mark.parametrize(
        "status,text,kind",
        [
            (429, "", FailureKind.RATE_LIMITED),
            (403, "", FailureKind.BLOCKED),
            (200, "<p>Please solve this CAPTCHA</p>", FailureKind.BLOCKED),
            (200, "Enter the characters you see below. Robot Check", FailureKind.BLOCKED),
            (404, "not here", FailureKind.EXTRACTION_FAILURE),
            (410, "", FailureKind.EXTRACTION_FAILURE),
            (503, "", FailureKind.NETWORK_ERROR),
        ],
    )
    def test_failures_are_classified(self, web, status, text, kind):
        with pytest.raises(FetchError) as exc_info:
            web.classify_response("http://x", status, text)

        assert exc_info.value.kind == kind
        assert exc_info.value.status_code == status

    def test_ok_page_passes(self, web):
        web.classify_response("http://x", 200, "<html>fine</html>")

    def test_large_product_page_mentioning_captcha_passes(self, web):
        page = (
            "<html><head><title>ON Gold Standard Whey 2 kg</title>"
            "<script>var captchaWidget = null; // access denied fallback</script></head>"
            "<body>" + "<p>product details</p>" * 2000 + "</body></html>"
        )

        web.classify_response("http://x", 200, page)

    def test_challenge_title_on_large_page_is_blocked(self, web):
        page = "<html><head><title>Robot Check</title></head><body>" + "x" * 50000 + "</body></html>"

        with pytest.raises(FetchError) as exc_info:
            web.classify_response("http://x", 200, page)

        assert exc_info.value.kind == FailureKind.BLOCKED

    def test_service_unavailable_challenge_is_blocked(self, web):
        page = "<html><body>" + "x" * 50000 + "Verify you are human</body></html>"

        with pytest.raises(FetchError) as exc_info:
            web.classify_response("http://x", 503, page)

        assert exc_info.value.kind == FailureKind.BLOCKED

    def test_blocked_page_keeps_a_snippet(self, web):
        with pytest.raises(FetchError) as exc_info:
            web.classify_response("http://x", 200, "captcha " + "x" * 1000)

        assert len(exc_info.value.snippet) == 500


class TestGetPage:
    def test_sends_identity_and_timeout(self, web):
        web.session.get.return_value = response(text="<html><p>ok</p></html>")

        soup = web.get_page("http://x", IDENTITY, timeout=7)

        assert soup.p.text == "ok"
        _, kwargs = web.session.get.call_args
        assert kwargs["headers"] == {"User-Agent": "test-agent"}
        assert kwargs["proxies"] == {"http": "http://proxy:8080", "https": "http://proxy:8080"}
        assert kwargs["timeout"] == 7

    def test_timeout_is_classified(self, web):
        web.session.get.side_effect = requests.exceptions.ReadTimeout("slow")

        with pytest.raises(FetchError) as exc_info:
            web.get_page("http://x", IDENTITY, timeout=1)

        assert exc_info.value.kind == FailureKind.NETWORK_TIMEOUT

    def test_connection_error_is_classified(self, web):
        web.session.get.side_effect = requests.exceptions.ConnectionError("reset")

        with pytest.raises(FetchError) as exc_info:
            web.get_page("http://x", IDENTITY, timeout=1)

        assert exc_info.value.kind == FailureKind.NETWORK_ERROR


class TestParsing:
    @pytest.mark.parametrize(
        "text,expected",
        [("₹2,499.00", Decimal("2499.00")), ("Rs. 899", Decimal("899")), ("INR 12,345.5", Decimal("12345.5"))],
    )
    def test_extract_price(self, web, text, expected):
        assert web.extract_price(text) == expected

    def test_malformed_price(self, web):
        with pytest.raises(FetchError) as exc_info:
            web.extract_price("Currently unavailable", "http://x")

        assert exc_info.value.kind == FailureKind.EXTRACTION_FAILURE

    @pytest.mark.parametrize(
        "text,grams",
        [("Whey 2 kg", 2000), ("Whey 907g", 907), ("Syntha-6 5lb", 2268), ("Whey 2.27kg", 2270), ("Whey", None), (None, None)],
    )
    def test_parse_weight(self, text, grams):
        assert parse_weight_grams(text) == grams

    @pytest.mark.parametrize(
        "text,status",
        [
            ("In stock", StockStatus.IN_STOCK),
            ("Currently unavailable.", StockStatus.OUT_OF_STOCK),
            ("Only 2 left in stock", StockStatus.LIMITED),
            ("Ships soon", StockStatus.UNKNOWN),
            (None, StockStatus.IN_STOCK),
        ],
    )
    def test_stock_status(self, text, status):
        assert parse_stock_status(text) == status

    def test_canonical_url(self):
        assert canonical_url("HTTPS://Shop.Example/Item/?ref=x#top") == "https://shop.example/Item"

    def test_retailer_ids_from_urls(self):
        assert amazon_asin("https://www.amazon.in/Optimum-Nutrition/dp/B000QSNYGI/ref=sr_1_1") == "B000QSNYGI"
        assert amazon_canonical_url("https://www.amazon.in/x/dp/B000QSNYGI?th=1") == "https://www.amazon.in/dp/B000QSNYGI"
        assert flipkart_item_id("https://www.flipkart.com/on-whey/p/itm3a4b5c6d?pid=X") == "itm3a4b5c6d"


class TestHtmlRetailerFetcher:
    def test_fetch_product_page(self, web):
        web.session.get.return_value = response(text=AMAZON_PRODUCT)
        fetcher = HtmlRetailerFetcher(AMAZON, web)

        result = fetcher.fetch("https://www.amazon.in/dp/B000QSNYGI", IDENTITY, 10)

        assert result.price == Decimal("6299.00")
        assert result.stock_status == StockStatus.IN_STOCK
        assert result.weight_grams == 2000
        assert result.sku == "B000QSNYGI"
        assert result.title.startswith("Optimum Nutrition")

    def test_missing_price_is_extraction_failure(self, web):
        web.session.get.return_value = response(text="<html><body><h1>New layout</h1></body></html>")
        fetcher = HtmlRetailerFetcher(AMAZON, web)

        with pytest.raises(FetchError) as exc_info:
            fetcher.fetch("https://www.amazon.in/dp/B000QSNYGI", IDENTITY, 10)

        assert exc_info.value.kind == FailureKind.EXTRACTION_FAILURE
        assert "New layout" in exc_info.value.snippet

    def test_search_results(self, web):
        web.session.get.return_value = response(text=NUTRABAY_SEARCH)
        fetcher = HtmlRetailerFetcher(NUTRABAY, web)

        candidates = fetcher.search("whey protein", IDENTITY, 10)

        assert [c.url for c in candidates] == [
            "https://nutrabay.com/product/mb-biozyme-1kg",
            "https://nutrabay.com/product/on-gsw-2lb",
        ]
        assert candidates[0].price == Decimal("2899")
        assert candidates[0].weight_grams == 1000
        assert candidates[1].price is None
        args, _ = web.session.get.call_args
        assert args[0] == "https://nutrabay.com/?s=whey+protein&post_type=product"


class TestFetcherRegistry:
    def test_default_registry_covers_known_layouts(self):
        registry = FetcherRegistry.default()

        for retailer_id in ("amazon", "flipkart", "healthkart", "nutrabay", "static"):
            assert retailer_id in registry
        assert isinstance(registry.get("amazon"), HtmlRetailerFetcher)

    def test_unknown_retailer_raises(self):
        registry = FetcherRegistry([])

        with pytest.raises(UnknownRetailer):
            registry.get("nowhere")
