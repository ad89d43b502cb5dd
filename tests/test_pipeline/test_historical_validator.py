"""
Tests for the historical / backfill validation path.

Covers:
- Sequential mark-price jump rule against the last ACCEPTED price
- Future timestamps beyond the clock-skew tolerance
- Funding / open interest / liquidation row rules
"""

import math

import pytest

from liqcast.pipeline.channels import collect
from liqcast.pipeline.historical import HistoricalValidator
from liqcast.schemas.anomaly import ValidationRule
from liqcast.schemas.market import FundingRatePoint, Liquidation, MarkPricePoint, OpenInterestPoint

NOW = 1_700_000_000_000.0
MINUTE = 60_000.0


@pytest.fixture
def validator(clock):
    return HistoricalValidator(clock=clock)


def _liq(**overrides):
    values = dict(
        exchange="binance", symbol="BTC", side="SELL",
        price=100.0, quantity=2.0, usd_value=200.0, timestamp=NOW - MINUTE,
    )
    values.update(overrides)
    return Liquidation(**values)


class TestMarkPriceJump:
    def test_middle_spike_rejected_and_not_used_as_reference(self, validator):
        """[100, 135, 101]: 135 is a 35% jump; 101 is compared with 100."""
        rows = [
            MarkPricePoint(symbol="BTC", timestamp=NOW - 3 * MINUTE, mark_price=100.0),
            MarkPricePoint(symbol="BTC", timestamp=NOW - 2 * MINUTE, mark_price=135.0),
            MarkPricePoint(symbol="BTC", timestamp=NOW - 1 * MINUTE, mark_price=101.0),
        ]
        _, events = collect(validator.anomalies)
        accepted = validator.validate_mark_price_batch(rows)

        assert [r.mark_price for r in accepted] == [100.0, 101.0]
        assert len(events) == 1
        assert events[0].rule == ValidationRule.PRICE_JUMP
        assert events[0].value == 135.0

    def test_rows_sorted_by_time_first(self, validator):
        rows = [
            MarkPricePoint(symbol="BTC", timestamp=NOW - 1 * MINUTE, mark_price=101.0),
            MarkPricePoint(symbol="BTC", timestamp=NOW - 3 * MINUTE, mark_price=100.0),
            MarkPricePoint(symbol="BTC", timestamp=NOW - 2 * MINUTE, mark_price=135.0),
        ]
        accepted = validator.validate_mark_price_batch(rows)
        assert [r.mark_price for r in accepted] == [100.0, 101.0]

    def test_symbols_tracked_independently(self, validator):
        rows = [
            MarkPricePoint(symbol="BTC", timestamp=NOW - 2 * MINUTE, mark_price=100.0),
            MarkPricePoint(symbol="ETH", timestamp=NOW - 1 * MINUTE, mark_price=2000.0),
        ]
        assert len(validator.validate_mark_price_batch(rows)) == 2

    def test_twenty_percent_is_allowed(self, validator):
        outcome = validator.validate_mark_price(120.0, NOW, prev_mark_price=100.0)
        assert outcome.accepted

    def test_first_row_has_no_reference(self, validator):
        assert validator.validate_mark_price(100.0, NOW, prev_mark_price=None).accepted

    @pytest.mark.parametrize("price", [0.0, -1.0, math.nan])
    def test_non_positive_price_rejected(self, validator, price):
        assert not validator.validate_mark_price(price, NOW, prev_mark_price=None).accepted

    @pytest.mark.parametrize("price", [0.0, -1.0])
    def test_non_positive_price_rule(self, validator, price):
        outcome = validator.validate_mark_price(price, NOW, prev_mark_price=None)
        assert outcome.rule == ValidationRule.NON_POSITIVE_PRICE

    def test_nan_price_is_not_finite(self, validator):
        outcome = validator.validate_mark_price(math.nan, NOW, prev_mark_price=None)
        assert outcome.rule == ValidationRule.NOT_FINITE


class TestFutureTimestamps:
    def test_beyond_skew_tolerance_rejected(self, validator):
        outcome = validator.validate_mark_price(100.0, NOW + 5 * MINUTE + 1, prev_mark_price=None)
        assert outcome.rule == ValidationRule.FUTURE_TIMESTAMP

    def test_within_skew_tolerance_accepted(self, validator):
        assert validator.validate_mark_price(100.0, NOW + 4 * MINUTE, prev_mark_price=None).accepted

    def test_old_rows_are_not_stale(self, validator):
        """Backfill rows are historical by definition."""
        assert validator.validate_funding_rate(0.0001, NOW - 365 * 24 * 60 * MINUTE).accepted


class TestFundingAndOpenInterest:
    def test_funding_range(self, validator):
        assert validator.validate_funding_rate(0.05, NOW).accepted
        assert validator.validate_funding_rate(0.06, NOW).rule == ValidationRule.FUNDING_OUT_OF_RANGE

    def test_funding_batch_filters(self, validator):
        rows = [
            FundingRatePoint(symbol="BTC", funding_time=NOW, funding_rate=0.0001),
            FundingRatePoint(symbol="BTC", funding_time=NOW, funding_rate=math.inf),
        ]
        assert len(validator.validate_funding_rate_batch(rows)) == 1

    def test_open_interest_negative_rejected(self, validator):
        outcome = validator.validate_open_interest(-10.0, NOW)
        assert outcome.rule == ValidationRule.NEGATIVE_OPEN_INTEREST

    def test_open_interest_batch_reports(self, validator):
        _, events = collect(validator.anomalies)
        rows = [
            OpenInterestPoint(symbol="BTC", timestamp=NOW, open_interest_usd=5e8),
            OpenInterestPoint(symbol="BTC", timestamp=NOW, open_interest_usd=-1.0),
        ]
        assert len(validator.validate_open_interest_batch(rows)) == 1
        assert len(events) == 1
        assert events[0].exchange == "historical"


class TestLiquidations:
    def test_valid_liquidation(self, validator):
        assert validator.validate_liquidation(_liq()).accepted

    @pytest.mark.parametrize("field", ["price", "quantity", "usd_value"])
    def test_non_positive_amounts_rejected(self, validator, field):
        outcome = validator.validate_liquidation(_liq(**{field: 0.0}))
        assert outcome.rule == ValidationRule.INVALID_LIQUIDATION
        assert outcome.field == field

    def test_bad_side_rejected(self, validator):
        outcome = validator.validate_liquidation(_liq(side="LONG"))
        assert outcome.rule == ValidationRule.INVALID_LIQUIDATION
        assert outcome.field == "side"

    def test_rejection_reports_source_exchange(self, validator):
        _, events = collect(validator.anomalies)
        validator.validate_liquidation(_liq(exchange="okx", side="x"))
        assert events[0].exchange == "okx"

    def test_batch_keeps_valid_only(self, validator):
        rows = [_liq(), _liq(side="BUY"), _liq(quantity=-1.0)]
        assert len(validator.validate_liquidation_batch(rows)) == 2
