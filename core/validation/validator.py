"""Sanity checks for freshly scraped prices.

A scraped price is only as good as the page it came from. Stale caches,
bot-detection pages and layout changes routinely produce numbers that parse
fine but are wrong. The validator compares each price against the listing's
own recent history, its configured bounds and the same variant at other
retailers, and returns a verdict plus a confidence score.

Verdicts:
    valid       becomes the listing's current price and may trigger alerts
    suspicious  stored, but never alerts and never becomes the current price
    rejected    stored for audit only
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional

from core.domain import PriceObservation, ProductListing, ValidationRule, Verdict

ROLLING_WINDOW = 10
ROLLING_DAYS = 30
DAILY_WINDOW = timedelta(hours=24)
FRESHNESS_HORIZON = timedelta(days=7)

FRESHNESS_WEIGHT = 0.2
AGREEMENT_WEIGHT = 0.3
DISTANCE_WEIGHT = 0.5
NEUTRAL_SCORE = 0.5

_CENTS = Decimal("0.01")


@dataclass
class ValidationContext:
    """Everything the validator needs to judge one price.

    ``history`` holds the listing's recent observations, newest first.
    """

    listing: ProductListing
    price: Decimal
    observed_at: datetime
    rule: ValidationRule
    history: List[PriceObservation] = field(default_factory=list)
    sibling_prices: List[Decimal] = field(default_factory=list)


@dataclass
class ValidationResult:
    verdict: Verdict
    confidence: float
    reasons: List[str] = field(default_factory=list)
    rolling_average: Optional[Decimal] = None
    reference_price: Optional[Decimal] = None
    previous_price: Optional[Decimal] = None
    change_amount: Optional[Decimal] = None
    change_percent: Optional[Decimal] = None

    @property
    def is_valid(self) -> bool:
        return self.verdict == Verdict.VALID


def relative_deviation(value: Decimal, baseline: Decimal) -> float:
    return float(abs(value - baseline) / baseline)


def closeness(deviation: Optional[float]) -> float:
    """1.0 for no deviation, falling linearly to 0 at 100 %."""
    if deviation is None:
        return NEUTRAL_SCORE
    return max(0.0, 1.0 - deviation)


class PriceValidator:
    """Classifies a scraped price as valid, suspicious or rejected.

    Args:
        confirmation_tolerance_percent: A price within this distance of the
            immediately preceding suspicious observation corroborates it and
            is accepted as valid
    """

    def __init__(self, confirmation_tolerance_percent: float = 5.0):
        self.confirmation_tolerance = Decimal(str(confirmation_tolerance_percent))

    def rolling_average(self, context: ValidationContext) -> Optional[Decimal]:
        """Mean of the last 10 non-rejected observations from the past 30 days.

        Falls back to the listing's last known price when there is no usable
        history.
        """
        since = context.observed_at - timedelta(days=ROLLING_DAYS)
        prices = [
            o.price for o in context.history
            if o.verdict != Verdict.REJECTED and since <= o.recorded_at <= context.observed_at
        ][:ROLLING_WINDOW]
        if prices:
            return sum(prices, Decimal(0)) / len(prices)
        return context.listing.last_known_price

    def reference_price(self, context: ValidationContext) -> Optional[Decimal]:
        """Price the daily change is measured against."""
        since = context.observed_at - DAILY_WINDOW
        for observation in context.history:
            if observation.verdict == Verdict.VALID and since <= observation.recorded_at <= context.observed_at:
                return observation.price
        return context.listing.last_known_price

    def _freshness(self, context: ValidationContext) -> float:
        if not context.history:
            return NEUTRAL_SCORE
        age = context.observed_at - context.history[0].recorded_at
        if age <= timedelta(0):
            return 1.0
        return max(0.0, 1.0 - age / FRESHNESS_HORIZON)

    def confidence(self, context: ValidationContext, rolling_average: Optional[Decimal]) -> float:
        """Weighted blend of freshness, agreement with other retailers and
        distance from the rolling average.

        Independent of the verdict, so it never increases as the price moves
        away from the average.
        """
        if context.price <= 0:
            return 0.0

        distance = None
        if rolling_average:
            distance = relative_deviation(context.price, rolling_average)

        agreement = None
        siblings = [p for p in context.sibling_prices if p and p > 0]
        if siblings:
            sibling_mean = sum(siblings, Decimal(0)) / len(siblings)
            agreement = relative_deviation(context.price, sibling_mean)

        score = (
            FRESHNESS_WEIGHT * self._freshness(context)
            + AGREEMENT_WEIGHT * closeness(agreement)
            + DISTANCE_WEIGHT * closeness(distance)
        )
        return round(min(1.0, max(0.0, score)), 4)

    def _corroborates(self, context: ValidationContext) -> bool:
        if not context.history:
            return False
        latest = context.history[0]
        if latest.verdict != Verdict.SUSPICIOUS or latest.price <= 0:
            return False
        gap = abs(context.price - latest.price) / latest.price * 100
        return gap <= self.confirmation_tolerance

    def validate(self, context: ValidationContext) -> ValidationResult:
        price = context.price
        rule = context.rule
        reasons: List[str] = []

        average = self.rolling_average(context)
        reference = self.reference_price(context)
        previous = context.listing.last_known_price

        change_amount = change_percent = None
        if previous is not None and previous > 0 and price > 0:
            change_amount = price - previous
            change_percent = (change_amount / previous * 100).quantize(_CENTS, rounding=ROUND_HALF_UP)

        result = ValidationResult(
            verdict=Verdict.VALID,
            confidence=self.confidence(context, average),
            reasons=reasons,
            rolling_average=average,
            reference_price=reference,
            previous_price=previous,
            change_amount=change_amount,
            change_percent=change_percent,
        )

        if price <= 0:
            reasons.append(f"non-positive price {price}")
            result.verdict = Verdict.REJECTED
            return result

        if average is not None and average > 0:
            low = average * rule.min_price_multiplier
            high = average * rule.max_price_multiplier
            if price < low or price > high:
                reasons.append(
                    f"price {price} outside [{low.quantize(_CENTS)}, {high.quantize(_CENTS)}] "
                    f"around rolling average {average.quantize(_CENTS)}"
                )
                result.verdict = Verdict.REJECTED
                return result

        grams = context.listing.weight_grams
        if grams:
            per_gram = price / grams
            if rule.min_price_per_gram is not None and per_gram < rule.min_price_per_gram:
                reasons.append(f"{per_gram:.3f} per gram below minimum {rule.min_price_per_gram}")
                result.verdict = Verdict.REJECTED
                return result
            if rule.max_price_per_gram is not None and per_gram > rule.max_price_per_gram:
                reasons.append(f"{per_gram:.3f} per gram above maximum {rule.max_price_per_gram}")
                result.verdict = Verdict.REJECTED
                return result

        if reference is not None and reference > 0:
            daily_change = abs(price - reference) / reference * 100
            if daily_change > rule.max_price_change_percent_daily:
                if self._corroborates(context):
                    reasons.append("corroborates previous suspicious observation")
                else:
                    reasons.append(
                        f"changed {daily_change.quantize(_CENTS)}% against {reference}, "
                        f"limit {rule.max_price_change_percent_daily}%"
                    )
                    result.verdict = Verdict.SUSPICIOUS

        return result
