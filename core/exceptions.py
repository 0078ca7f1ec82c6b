from typing import Optional

from core.domain import FailureKind


class EngineError(Exception):
    """Base class for errors raised by the price engine."""


class ListingNotFound(EngineError):
    def __init__(self, listing_id: str):
        super().__init__(f"Listing {listing_id} not found")
        self.listing_id = listing_id


class UnknownRetailer(EngineError):
    def __init__(self, retailer_id: str):
        super().__init__(f"Unknown retailer '{retailer_id}'")
        self.retailer_id = retailer_id


class FetchError(EngineError):
    """A retailer fetch failed; ``kind`` drives retry and breaker decisions.

    Args:
        kind: Classified failure kind
        message: Human-readable detail
        status_code: HTTP status when one was received
        snippet: Start of the raw page, kept for manual review of
                 extraction failures
    """

    def __init__(
        self,
        kind: FailureKind,
        message: str,
        status_code: Optional[int] = None,
        snippet: Optional[str] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status_code = status_code
        self.snippet = snippet

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"


class CircuitOpen(EngineError):
    def __init__(self, retailer_id: str):
        super().__init__(f"Circuit open for '{retailer_id}', dispatch suspended")
        self.retailer_id = retailer_id


class AdmissionDeferred(EngineError):
    """The retailer's rate limit would not admit a request within the wait budget."""

    def __init__(self, retailer_id: str, wait: float):
        super().__init__(f"Rate limited by '{retailer_id}', next slot in {wait:.0f}s; retry later")
        self.retailer_id = retailer_id
        self.wait = wait
