"""Turns a user search into product listings across retailers."""

import logging
import re
from typing import List, Optional

from core.domain import (
    DiscoveryRequest,
    DiscoveryStatus,
    FailureKind,
    ProductListing,
    RetailerDiscoveryResult,
    utcnow,
)
from core.exceptions import AdmissionDeferred, CircuitOpen, EngineError, FetchError, UnknownRetailer
from core.scrapers.base import SearchCandidate
from core.scrapers.web_fetcher import canonical_url

logger = logging.getLogger(__name__)

_WEIGHT_TOKEN = re.compile(r"\d+(?:\.\d+)?\s*(?:kg|kgs|g|gm|gms|grams?|lb|lbs)\b", re.IGNORECASE)
_WORD = re.compile(r"[a-z0-9]+")
_NOISE_WORDS = {"a", "and", "for", "in", "of", "the", "with", "pack", "powder", "protein", "supplement"}


def variant_key(title: Optional[str], weight_grams: Optional[int]) -> Optional[str]:
    """Key shared by the same product variant at different retailers.

    Sorted title words without pack-size tokens and filler, plus the pack size
    in grams: "ON Gold Standard Whey 2 kg" -> "gold-on-standard-whey:2000g".
    """
    if not title:
        return None
    words = sorted(set(_WORD.findall(_WEIGHT_TOKEN.sub(" ", title.lower()))) - _NOISE_WORDS)
    if not words:
        return None
    key = "-".join(words)[:200]
    return f"{key}:{weight_grams}g" if weight_grams else key


def guess_category(title: Optional[str]) -> Optional[str]:
    if not title:
        return None
    lowered = title.lower()
    if "gainer" in lowered:
        return "mass_gainer"
    if "isolate" in lowered or "iso" in lowered.split():
        return "whey_isolate"
    if "whey" in lowered:
        return "whey_protein"
    return None


class DiscoveryProcessor:
    """Searches each target retailer, registers listings and queues first scrapes.

    One retailer failing never fails the request. Its error is recorded in
    ``retailer_results`` and the other retailers carry on.
    """

    def __init__(
        self,
        persistence,
        registry,
        governor,
        rotator,
        breakers,
        monitor,
        scheduler,
        config,
        fetch_timeout: float = 20.0,
        max_wait: float = 30.0,
    ):
        self.persistence = persistence
        self.registry = registry
        self.governor = governor
        self.rotator = rotator
        self.breakers = breakers
        self.monitor = monitor
        self.scheduler = scheduler
        self.config = config
        self.fetch_timeout = fetch_timeout
        self.max_wait = max_wait

    def _finish(self, request: DiscoveryRequest, status: DiscoveryStatus, error: Optional[str] = None) -> None:
        request.status = status
        request.error = error
        request.completed_at = utcnow()
        self.persistence.save_discovery_request(request)

    def process(self, request: DiscoveryRequest) -> List[ProductListing]:
        if request.is_terminal:
            logger.info("Discovery request %s already %s", request.id, request.status.value)
            return []

        if not request.query or not request.query.strip():
            self._finish(request, DiscoveryStatus.FAILED, "empty search query")
            return []

        targets = list(request.target_retailers) or [r.id for r in self.config.active_retailers()]
        if not targets:
            self._finish(request, DiscoveryStatus.FAILED, "no retailers to search")
            return []

        request.status = DiscoveryStatus.PROCESSING
        request.started_at = utcnow()
        self.persistence.save_discovery_request(request)
        logger.info("Processing discovery %s for '%s' on %s", request.id, request.query, ", ".join(targets))

        found: List[ProductListing] = []
        try:
            for retailer_id in targets:
                result = RetailerDiscoveryResult()
                request.retailer_results[retailer_id] = result
                try:
                    listings = self._discover_on(retailer_id, request.query.strip())
                except EngineError as e:
                    result.error = str(e)
                    logger.warning("Discovery on %s failed: %s", retailer_id, e)
                    continue
                except Exception as e:
                    result.error = f"unexpected error: {e}"
                    logger.exception("Discovery on %s failed", retailer_id)
                    continue
                result.listing_ids = [listing.id for listing in listings]
                for listing in listings:
                    if listing.id not in request.listing_ids:
                        request.listing_ids.append(listing.id)
                        found.append(listing)
        finally:
            self._finish(request, DiscoveryStatus.COMPLETED)
        logger.info("Discovery %s completed with %d listings", request.id, len(request.listing_ids))
        return found

    def _discover_on(self, retailer_id: str, query: str) -> List[ProductListing]:
        retailer = self.config.retailer(retailer_id)
        if retailer is None or not retailer.is_active or retailer_id not in self.registry:
            raise UnknownRetailer(retailer_id)
        if not self.breakers.can_dispatch(retailer_id):
            raise CircuitOpen(retailer_id)

        admission = self.governor.acquire(retailer_id, self.max_wait)
        if not admission.proceed:
            raise AdmissionDeferred(retailer_id, admission.wait)
        self.breakers.on_dispatch(retailer_id)

        identity = self.rotator.next(retailer_id)
        fetcher = self.registry.get(retailer_id)
        try:
            candidates = fetcher.search(query, identity, self.fetch_timeout)
        except Exception as e:
            # unexpected parser errors count as extraction failures
            kind = e.kind if isinstance(e, FetchError) else FailureKind.EXTRACTION_FAILURE
            self.rotator.report_failure(retailer_id, identity, kind)
            self.breakers.record(retailer_id, False)
            self.monitor.record(retailer_id, False)
            raise
        self.rotator.report_success(retailer_id, identity)
        self.breakers.record(retailer_id, True)
        self.monitor.record(retailer_id, True)

        listings = []
        seen = set()
        for candidate in candidates:
            listing = self._register(retailer_id, candidate)
            if listing.id in seen:
                continue
            seen.add(listing.id)
            self.scheduler.submit_discovery(listing)
            listings.append(listing)
        return listings

    def _register(self, retailer_id: str, candidate: SearchCandidate) -> ProductListing:
        url = canonical_url(candidate.url)
        existing = self.persistence.find_listing(retailer_id, url=url, sku=candidate.sku)
        if existing is not None:
            return existing
        listing = ProductListing(
            retailer_id=retailer_id,
            url=url,
            retailer_sku=candidate.sku,
            title=candidate.title,
            weight_grams=candidate.weight_grams,
            variant_key=variant_key(candidate.title, candidate.weight_grams),
            category=guess_category(candidate.title),
        )
        logger.debug("Registering new listing %s at %s", listing.id, url)
        return self.persistence.save_listing(listing)
