"""
Cross-exchange snapshot schema.

One AggregatedSnapshot per symbol per cycle, built only from records that
passed the validation gate. Exchanges that contributed nothing for a metric
are absent from that metric's breakdown; they are never recorded as zero.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


def reference_price_of(avg_mark_price: Optional[float], median_index_price: Optional[float]) -> Optional[float]:
    """Best available price: average mark, falling back to median index."""
    if avg_mark_price and avg_mark_price > 0:
        return avg_mark_price
    if median_index_price and median_index_price > 0:
        return median_index_price
    return None


def basis_spread_pct(mark_prices: list[float], reference: Optional[float]) -> Optional[float]:
    """(max - min) / reference in percent; None with fewer than two venues."""
    if len(mark_prices) < 2 or reference is None or reference <= 0:
        return None
    return (max(mark_prices) - min(mark_prices)) / reference * 100.0


class AggregatedSnapshot(BaseModel):
    """Validated cross-exchange view of one symbol."""

    model_config = ConfigDict(frozen=True)

    symbol: str
    timestamp: float                                  # Cycle timestamp, ms epoch
    exchanges: list[str] = Field(default_factory=list)

    # Cross-exchange aggregates (None when no exchange supplied the metric)
    avg_mark_price: Optional[float] = None
    median_index_price: Optional[float] = None
    total_open_interest_value: Optional[float] = None
    avg_funding_rate: Optional[float] = None

    # Per-exchange breakdown
    mark_price_by_exchange: dict[str, float] = Field(default_factory=dict)
    index_price_by_exchange: dict[str, float] = Field(default_factory=dict)
    open_interest_by_exchange: dict[str, float] = Field(default_factory=dict)
    funding_rate_by_exchange: dict[str, float] = Field(default_factory=dict)

    # Rolling context carried by the aggregator, oldest first
    mark_price_history: list[float] = Field(default_factory=list)
    previous_open_interest: Optional[float] = None
    spread_history: list[float] = Field(default_factory=list)   # basis spreads (%), current cycle last

    @property
    def has_inputs(self) -> bool:
        """Whether any exchange contributed a validated reading this cycle."""
        return bool(
            self.mark_price_by_exchange
            or self.open_interest_by_exchange
            or self.funding_rate_by_exchange
        )

    @property
    def reference_price(self) -> Optional[float]:
        return reference_price_of(self.avg_mark_price, self.median_index_price)

    @property
    def spread_pct(self) -> Optional[float]:
        return basis_spread_pct(list(self.mark_price_by_exchange.values()), self.reference_price)
