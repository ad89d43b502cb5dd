"""
Liquidation Cascade Detector — ground truth from prices and liquidation prints.

A sliding window [t, t + W) is a cascade candidate when all three hold:

1. |price change| ≥ k · σ · √W, where σ is the RMS of per-interval log
   returns over the trailing lookback (no estimate below min_returns)
2. Liquidation volume ≥ max(percentile of trailing W-sized buckets,
   min_liq_usd); with fewer than min_liq_buckets buckets only the floor applies
3. One side holds at least dominance_ratio of that volume

Overlapping candidates with the same direction merge into one event, with
price change and volume recomputed over the merged span. Price points are
expected one interval (a minute by default) apart.

Liquidation sides follow the exchange convention: a SELL print closes a long
position (long squeeze), a BUY print closes a short one.

Volumes are never estimated: without real liquidation prints no window
qualifies.
"""

import bisect
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from itertools import accumulate
from typing import Optional, Sequence

import structlog

from liqcast.config import settings
from liqcast.engine.factors import quantile
from liqcast.schemas.market import Liquidation, MarkPricePoint
from liqcast.schemas.risk import CascadeDirection, CascadeEvent

logger = structlog.get_logger(__name__)

MS_PER_MINUTE = 60_000.0


@dataclass(frozen=True)
class DetectorConfig:
    window_minutes: float = 5.0
    vol_lookback_minutes: float = 1440.0
    sigma_multiplier: float = 3.0
    liq_percentile: float = 0.95
    min_liq_usd: float = 100_000.0
    dominance_ratio: float = 0.65
    step_minutes: float = 1.0
    min_returns: int = 30
    min_liq_buckets: int = 10

    def __post_init__(self):
        if self.window_minutes <= 0 or self.step_minutes <= 0 or self.vol_lookback_minutes <= 0:
            raise ValueError("window, step and lookback must be positive")
        if not 0.0 <= self.liq_percentile <= 1.0:
            raise ValueError("liq_percentile must be in [0, 1]")
        if not 0.5 <= self.dominance_ratio <= 1.0:
            raise ValueError("dominance_ratio must be in [0.5, 1]")

    @classmethod
    def from_settings(cls) -> "DetectorConfig":
        return cls(
            window_minutes=settings.detector_window_minutes,
            vol_lookback_minutes=settings.detector_vol_lookback_minutes,
            sigma_multiplier=settings.detector_sigma_multiplier,
            min_liq_usd=settings.detector_min_liq_usd,
            dominance_ratio=settings.detector_dominance_ratio,
        )


@dataclass
class _Candidate:
    start: float
    end: float
    direction: CascadeDirection
    price_change_pct: float
    liquidation_volume_usd: float


class _PriceSeries:
    """Time-sorted prices with prefix sums of squared log returns."""

    def __init__(self, points: Sequence[MarkPricePoint]):
        ordered = sorted(points, key=lambda p: p.timestamp)
        self.times = [p.timestamp for p in ordered]
        self.prices = [p.mark_price for p in ordered]

        self.return_times: list[float] = []
        squares: list[float] = []
        for i in range(1, len(ordered)):
            prev, cur = self.prices[i - 1], self.prices[i]
            if prev > 0 and cur > 0:
                r = math.log(cur / prev)
                self.return_times.append(self.times[i])
                squares.append(r * r)
        self._cum_sq = [0.0, *accumulate(squares)]

    def price_at(self, t: float) -> float:
        """Linear interpolation, clamped to the first and last points."""
        if t <= self.times[0]:
            return self.prices[0]
        if t >= self.times[-1]:
            return self.prices[-1]
        hi = bisect.bisect_right(self.times, t)
        lo = hi - 1
        t0, t1 = self.times[lo], self.times[hi]
        if t1 == t0:
            return self.prices[lo]
        frac = (t - t0) / (t1 - t0)
        return self.prices[lo] + frac * (self.prices[hi] - self.prices[lo])

    def trailing_sigma(self, t: float, lookback_ms: float, min_returns: int) -> float:
        """RMS per-interval log return over [t - lookback, t]; 0 when too few."""
        lo = bisect.bisect_left(self.return_times, t - lookback_ms)
        hi = bisect.bisect_right(self.return_times, t)
        n = hi - lo
        if n < min_returns:
            return 0.0
        return math.sqrt((self._cum_sq[hi] - self._cum_sq[lo]) / n)


class _LiquidationSeries:
    """Time-sorted prints with per-side prefix sums of USD volume."""

    def __init__(self, liquidations: Sequence[Liquidation]):
        ordered = sorted(liquidations, key=lambda liq: liq.timestamp)
        self.times = [liq.timestamp for liq in ordered]
        self._cum_long = [0.0, *accumulate(liq.usd_value if liq.side.upper() == "SELL" else 0.0 for liq in ordered)]
        self._cum_short = [0.0, *accumulate(liq.usd_value if liq.side.upper() == "BUY" else 0.0 for liq in ordered)]

    def volumes(self, start: float, end: float) -> tuple[float, float]:
        """(long, short) liquidated USD within [start, end)."""
        lo = bisect.bisect_left(self.times, start)
        hi = bisect.bisect_left(self.times, end)
        return self._cum_long[hi] - self._cum_long[lo], self._cum_short[hi] - self._cum_short[lo]

    def threshold(self, t: float, lookback_ms: float, window_ms: float, config: DetectorConfig) -> float:
        buckets: list[float] = []
        start = t - lookback_ms
        while start + window_ms <= t:
            long_vol, short_vol = self.volumes(start, start + window_ms)
            buckets.append(long_vol + short_vol)
            start += window_ms

        if len(buckets) < config.min_liq_buckets:
            return config.min_liq_usd
        return max(quantile(sorted(buckets), config.liq_percentile), config.min_liq_usd)


def _evaluate_window(
    t: float,
    window_ms: float,
    lookback_ms: float,
    prices: _PriceSeries,
    liquidations: _LiquidationSeries,
    config: DetectorConfig,
) -> Optional[_Candidate]:
    t_end = t + window_ms
    p_start = prices.price_at(t)
    p_end = prices.price_at(t_end)
    if p_start <= 0:
        return None
    delta = (p_end - p_start) / p_start

    sigma = prices.trailing_sigma(t, lookback_ms, config.min_returns)
    if sigma == 0:
        return None
    if abs(delta) < config.sigma_multiplier * sigma * math.sqrt(config.window_minutes):
        return None

    long_vol, short_vol = liquidations.volumes(t, t_end)
    total = long_vol + short_vol
    if total < liquidations.threshold(t, lookback_ms, window_ms, config):
        return None
    if total > 0 and max(long_vol, short_vol) / total < config.dominance_ratio:
        return None

    return _Candidate(
        start=t,
        end=t_end,
        direction=CascadeDirection.LONG_SQUEEZE if long_vol > short_vol else CascadeDirection.SHORT_SQUEEZE,
        price_change_pct=delta * 100.0,
        liquidation_volume_usd=total,
    )


def _merge(
    candidates: list[_Candidate], prices: _PriceSeries, liquidations: _LiquidationSeries,
) -> list[_Candidate]:
    if not candidates:
        return []

    ordered = sorted(candidates, key=lambda c: c.start)
    merged: list[_Candidate] = []
    current = ordered[0]
    for nxt in ordered[1:]:
        if nxt.start <= current.end and nxt.direction == current.direction:
            current.end = max(current.end, nxt.end)
        else:
            merged.append(current)
            current = nxt
    merged.append(current)

    for event in merged:
        p_start = prices.price_at(event.start)
        p_end = prices.price_at(event.end)
        if p_start > 0:
            event.price_change_pct = (p_end - p_start) / p_start * 100.0
        long_vol, short_vol = liquidations.volumes(event.start, event.end)
        event.liquidation_volume_usd = long_vol + short_vol
    return merged


def _to_datetime(ms: float) -> datetime:
    return datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc)


def detect_cascades(
    symbol: str,
    prices: Sequence[MarkPricePoint],
    liquidations: Sequence[Liquidation],
    config: Optional[DetectorConfig] = None,
) -> list[CascadeEvent]:
    """Cascade events for one symbol, oldest first."""
    config = config or DetectorConfig()
    if len(prices) < 2:
        return []

    price_series = _PriceSeries(prices)
    liq_series = _LiquidationSeries(liquidations)
    window_ms = config.window_minutes * MS_PER_MINUTE
    step_ms = config.step_minutes * MS_PER_MINUTE
    lookback_ms = config.vol_lookback_minutes * MS_PER_MINUTE

    candidates: list[_Candidate] = []
    t = price_series.times[0]
    t_max = price_series.times[-1]
    while t + window_ms <= t_max:
        candidate = _evaluate_window(t, window_ms, lookback_ms, price_series, liq_series, config)
        if candidate is not None:
            candidates.append(candidate)
        t += step_ms

    merged = _merge(candidates, price_series, liq_series)
    if merged:
        logger.info("cascades_detected", symbol=symbol, candidates=len(candidates), events=len(merged))

    return [
        CascadeEvent(
            symbol=symbol,
            direction=c.direction,
            start_time=_to_datetime(c.start),
            end_time=_to_datetime(c.end),
            price_change_pct=c.price_change_pct,
            liquidation_volume_usd=c.liquidation_volume_usd,
        )
        for c in merged
    ]
