"""Price-change events handed to whatever delivers alerts (email, push, ...).

Delivery and its retries belong to the notifier. The engine publishes and
moves on; a notifier that raises is logged and otherwise ignored.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional, Protocol

from core.domain import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PriceChangedEvent:
    listing_id: str
    retailer_id: str
    new_price: Decimal
    previous_price: Optional[Decimal]
    change_percent: Optional[Decimal]
    confidence: float
    variant_key: Optional[str] = None
    title: Optional[str] = None
    url: Optional[str] = None
    observed_at: datetime = field(default_factory=utcnow)


class Notifier(Protocol):
    def publish(self, event: PriceChangedEvent) -> None: ...


class LoggingNotifier:
    """Default notifier: writes the event to the log."""

    def publish(self, event: PriceChangedEvent) -> None:
        logger.info(
            "Price drop on %s (%s): %s -> %s (%s%%), confidence %.2f",
            event.title or event.listing_id,
            event.retailer_id,
            event.previous_price,
            event.new_price,
            event.change_percent,
            event.confidence,
        )


def publish_safely(notifier: Notifier, event: PriceChangedEvent) -> None:
    try:
        notifier.publish(event)
    except Exception:
        logger.exception("Notifier failed for listing %s", event.listing_id)
