"""
Raw exchange telemetry schemas.

These are the records exchange adapters hand over each poll cycle. Numeric
fields deliberately accept NaN/Infinity: rejecting bad values is the
validation gate's job, not the schema's, so a malformed reading becomes an
AnomalyEvent instead of an exception.
"""

from typing import Optional, Union

from pydantic import BaseModel, Field


class OpenInterest(BaseModel):
    """Outstanding positions for one symbol on one exchange."""

    exchange: str
    symbol: str
    open_interest: float              # Contracts / base currency
    open_interest_value: float        # USD notional
    timestamp: float                  # ms epoch


class FundingRate(BaseModel):
    """Current perpetual funding rate (decimal, 0.0001 = 0.01%)."""

    exchange: str
    symbol: str
    funding_rate: float
    funding_time: Optional[float] = None   # Next funding, ms epoch
    timestamp: float


class MarkPrice(BaseModel):
    """Mark (margining) price alongside the index (reference) price."""

    exchange: str
    symbol: str
    mark_price: float
    index_price: float
    timestamp: float


class Liquidation(BaseModel):
    """A single forced-closure print from a liquidation feed."""

    exchange: str
    symbol: str
    side: str                         # BUY | SELL
    price: float
    quantity: float
    usd_value: float
    timestamp: float


RawMetric = Union[OpenInterest, FundingRate, MarkPrice]


class ExchangeData(BaseModel):
    """One exchange's full metric bundle for a poll cycle."""

    exchange: str
    open_interest: list[OpenInterest] = Field(default_factory=list)
    funding_rates: list[FundingRate] = Field(default_factory=list)
    mark_prices: list[MarkPrice] = Field(default_factory=list)
    timestamp: float

    @property
    def is_empty(self) -> bool:
        return not (self.open_interest or self.funding_rates or self.mark_prices)


class MarkPricePoint(BaseModel):
    """A historical mark price row (backfill path)."""

    symbol: str
    timestamp: float
    mark_price: float


class FundingRatePoint(BaseModel):
    """A historical funding rate row (backfill path)."""

    symbol: str
    funding_time: float
    funding_rate: float


class OpenInterestPoint(BaseModel):
    """A historical open interest row (backfill path)."""

    symbol: str
    timestamp: float
    open_interest_usd: float
