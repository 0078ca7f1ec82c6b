"""Tests for price validation verdicts and confidence scoring."""

from datetime import timedelta
from decimal import Decimal

import pytest

from core.domain import ProductListing, ValidationRule, Verdict
from core.validation.validator import PriceValidator, ValidationContext


@pytest.fixture
def validator():
    return PriceValidator(confirmation_tolerance_percent=5.0)


@pytest.fixture
def listing():
    return ProductListing(retailer_id="static", url="http://example.com/product1", id="l1")


@pytest.fixture
def context(listing, base_time, observation_at):
    """Factory for a context with valid history at ``prices`` (newest first, hourly)."""

    def _make(price, prices=(), rule=None, siblings=(), verdicts=None, weight_grams=None):
        verdicts = verdicts or [Verdict.VALID] * len(prices)
        history = [
            observation_at(listing.id, p, base_time - timedelta(hours=i + 1), v)
            for i, (p, v) in enumerate(zip(prices, verdicts))
        ]
        listing.weight_grams = weight_grams
        return ValidationContext(
            listing=listing,
            price=Decimal(str(price)),
            observed_at=base_time,
            rule=rule or ValidationRule(),
            history=history,
            sibling_prices=[Decimal(str(s)) for s in siblings],
        )

    return _make


class TestBounds:
    def test_lower_multiplier_bound_is_inclusive(self, validator, context):
        result = validator.validate(context("350.00", prices=["3500"] * 5))

        assert result.verdict != Verdict.REJECTED

    def test_just_below_lower_bound_is_rejected(self, validator, context):
        result = validator.validate(context("346.50", prices=["3500"] * 5))

        assert result.verdict == Verdict.REJECTED
        assert "rolling average" in result.reasons[0]

    def test_far_above_average_is_rejected(self, validator, context):
        result = validator.validate(context("50000", prices=["3500"] * 10))

        assert result.verdict == Verdict.REJECTED
        assert result.rolling_average == Decimal("3500")

    def test_non_positive_price_rejected(self, validator, context):
        result = validator.validate(context("0", prices=["3500"]))

        assert result.verdict == Verdict.REJECTED
        assert result.confidence == 0.0

    def test_per_gram_bounds(self, validator, context):
        rule = ValidationRule(min_price_per_gram=Decimal("1.0"), max_price_per_gram=Decimal("20.0"))

        too_cheap = validator.validate(context("500", prices=["3000"], rule=rule, weight_grams=1000))
        too_dear = validator.validate(context("25000", prices=["3000"], rule=rule, weight_grams=1000))
        fine = validator.validate(context("3100", prices=["3000"], rule=rule, weight_grams=1000))

        assert too_cheap.verdict == Verdict.REJECTED
        assert "below minimum" in too_cheap.reasons[0]
        assert too_dear.verdict == Verdict.REJECTED
        assert "above maximum" in too_dear.reasons[0]
        assert fine.verdict == Verdict.VALID

    def test_no_history_and_no_known_price_is_valid(self, validator, context):
        result = validator.validate(context("2899"))

        assert result.verdict == Verdict.VALID
        assert result.rolling_average is None
        assert result.confidence == 0.5


class TestDailyChange:
    def test_large_jump_is_suspicious(self, validator, context):
        result = validator.validate(context("4800", prices=["3000"]))

        assert result.verdict == Verdict.SUSPICIOUS
        assert result.reference_price == Decimal("3000")

    def test_jump_within_limit_is_valid(self, validator, context):
        result = validator.validate(context("4400", prices=["3000"]))

        assert result.verdict == Verdict.VALID

    def test_confirmed_by_next_observation(self, validator, context):
        result = validator.validate(
            context("4900", prices=["4800", "3000"], verdicts=[Verdict.SUSPICIOUS, Verdict.VALID])
        )

        assert result.verdict == Verdict.VALID
        assert "corroborates" in result.reasons[0]

    def test_not_confirmed_when_far_from_suspicious_price(self, validator, context):
        result = validator.validate(
            context("5600", prices=["4800", "3000"], verdicts=[Verdict.SUSPICIOUS, Verdict.VALID])
        )

        assert result.verdict == Verdict.SUSPICIOUS

    def test_reference_ignores_suspicious_observations(self, validator, context):
        ctx = context("3000", prices=["4800", "3000"], verdicts=[Verdict.SUSPICIOUS, Verdict.VALID])

        assert validator.reference_price(ctx) == Decimal("3000")

    def test_reference_falls_back_to_last_known_price(self, validator, context, listing, base_time, observation_at):
        listing.last_known_price = Decimal("2500")
        ctx = context("2600")
        ctx.history = [observation_at(listing.id, "3000", base_time - timedelta(days=2))]

        assert validator.reference_price(ctx) == Decimal("2500")


class TestRollingAverage:
    def test_excludes_rejected_observations(self, validator, context):
        ctx = context(
            "3000",
            prices=["99999", "3000", "3200"],
            verdicts=[Verdict.REJECTED, Verdict.VALID, Verdict.SUSPICIOUS],
        )

        assert validator.rolling_average(ctx) == Decimal("3100")

    def test_uses_last_ten(self, validator, context):
        ctx = context("3000", prices=["3000"] * 10 + ["9000"] * 5)

        assert validator.rolling_average(ctx) == Decimal("3000")

    def test_ignores_observations_older_than_thirty_days(self, validator, context, listing, base_time, observation_at):
        ctx = context("3000")
        ctx.history = [observation_at(listing.id, "1000", base_time - timedelta(days=31))]
        listing.last_known_price = Decimal("2800")

        assert validator.rolling_average(ctx) == Decimal("2800")


class TestConfidence:
    def test_never_increases_with_distance_from_average(self, validator, context):
        scores = [
            validator.validate(context(price, prices=["3000"] * 5, siblings=["3000"])).confidence
            for price in ["3000", "3300", "3900", "6000", "12000", "29000"]
        ]

        assert scores == sorted(scores, reverse=True)

    def test_agreement_with_other_retailers_raises_confidence(self, validator, context):
        agree = validator.validate(context("3000", prices=["3000"], siblings=["3000", "3050"]))
        disagree = validator.validate(context("3000", prices=["3000"], siblings=["6000"]))

        assert agree.confidence > disagree.confidence

    def test_stale_history_lowers_confidence(self, validator, context, listing, base_time, observation_at):
        fresh = context("3000", prices=["3000"])
        stale = context("3000")
        stale.history = [observation_at(listing.id, "3000", base_time - timedelta(days=6))]

        assert validator.confidence(fresh, Decimal("3000")) > validator.confidence(stale, Decimal("3000"))

    def test_bounded(self, validator, context):
        result = validator.validate(context("3000", prices=["3000"] * 3, siblings=["3000"]))

        assert 0.0 <= result.confidence <= 1.0
        assert result.confidence > 0.9
