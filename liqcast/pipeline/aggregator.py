"""
Cross-Exchange Aggregator — validated bundles to one snapshot per symbol.

Only records that passed the validation gate arrive here. An exchange that
supplied nothing for a metric is left out of that metric's breakdown and
out of its average; it is never counted as zero.

The aggregator is the one stateful step of the cycle: it keeps a short
rolling history of average mark prices, a longer history of cross-exchange
basis spreads and the previous total open interest per symbol, and hands
them to the scoring engine inside the snapshot so the factor computations
stay pure.
"""

import statistics
from collections import deque
from typing import Optional

import structlog

from liqcast.pipeline.validator import now_ms
from liqcast.schemas.market import ExchangeData
from liqcast.schemas.snapshot import AggregatedSnapshot, basis_spread_pct, reference_price_of

logger = structlog.get_logger(__name__)


def _first_for_symbol(records: list, symbol: str):
    for record in records:
        if record.symbol == symbol:
            return record
    return None


class CrossExchangeAggregator:
    """Builds AggregatedSnapshots and carries per-symbol rolling context."""

    def __init__(self, history_length: int = 60, spread_history_length: int = 43_200):
        if history_length < 1:
            raise ValueError("history_length must be >= 1")
        if spread_history_length < 1:
            raise ValueError("spread_history_length must be >= 1")
        self.history_length = history_length
        self.spread_history_length = spread_history_length
        self._mark_history: dict[str, deque[float]] = {}
        self._spread_history: dict[str, deque[float]] = {}
        self._previous_oi: dict[str, float] = {}

    def aggregate(
        self,
        validated: list[ExchangeData],
        symbols: list[str],
        timestamp: Optional[float] = None,
    ) -> list[AggregatedSnapshot]:
        """One snapshot per requested symbol, in the order given."""
        timestamp = now_ms() if timestamp is None else timestamp
        return [self._aggregate_symbol(validated, symbol, timestamp) for symbol in symbols]

    def reset(self, symbol: Optional[str] = None) -> None:
        """Drop rolling context for one symbol, or for all of them."""
        if symbol is None:
            self._mark_history.clear()
            self._spread_history.clear()
            self._previous_oi.clear()
        else:
            self._mark_history.pop(symbol, None)
            self._spread_history.pop(symbol, None)
            self._previous_oi.pop(symbol, None)

    def _aggregate_symbol(
        self, validated: list[ExchangeData], symbol: str, timestamp: float,
    ) -> AggregatedSnapshot:
        mark_by_exchange: dict[str, float] = {}
        index_by_exchange: dict[str, float] = {}
        oi_by_exchange: dict[str, float] = {}
        funding_by_exchange: dict[str, float] = {}

        for data in validated:
            oi = _first_for_symbol(data.open_interest, symbol)
            if oi is not None:
                oi_by_exchange[data.exchange] = oi.open_interest_value

            funding = _first_for_symbol(data.funding_rates, symbol)
            if funding is not None:
                funding_by_exchange[data.exchange] = funding.funding_rate

            price = _first_for_symbol(data.mark_prices, symbol)
            if price is not None:
                if price.mark_price > 0:
                    mark_by_exchange[data.exchange] = price.mark_price
                if price.index_price > 0:
                    index_by_exchange[data.exchange] = price.index_price

        exchanges = sorted(set(mark_by_exchange) | set(oi_by_exchange) | set(funding_by_exchange))

        avg_mark = statistics.fmean(mark_by_exchange.values()) if mark_by_exchange else None
        median_index = statistics.median(index_by_exchange.values()) if index_by_exchange else None
        total_oi = sum(oi_by_exchange.values()) if oi_by_exchange else None
        avg_funding = statistics.fmean(funding_by_exchange.values()) if funding_by_exchange else None

        history = self._mark_history.setdefault(symbol, deque(maxlen=self.history_length))
        if avg_mark is not None:
            history.append(avg_mark)
        previous_oi = self._previous_oi.get(symbol)
        if total_oi is not None:
            self._previous_oi[symbol] = total_oi

        spreads = self._spread_history.setdefault(symbol, deque(maxlen=self.spread_history_length))
        spread = basis_spread_pct(list(mark_by_exchange.values()), reference_price_of(avg_mark, median_index))
        if spread is not None:
            spreads.append(spread)

        if not exchanges:
            logger.info("symbol_no_validated_inputs", symbol=symbol)

        return AggregatedSnapshot(
            symbol=symbol,
            timestamp=timestamp,
            exchanges=exchanges,
            avg_mark_price=avg_mark,
            median_index_price=median_index,
            total_open_interest_value=total_oi,
            avg_funding_rate=avg_funding,
            mark_price_by_exchange=mark_by_exchange,
            index_price_by_exchange=index_by_exchange,
            open_interest_by_exchange=oi_by_exchange,
            funding_rate_by_exchange=funding_by_exchange,
            mark_price_history=list(history),
            previous_open_interest=previous_oi,
            spread_history=list(spreads),
        )
