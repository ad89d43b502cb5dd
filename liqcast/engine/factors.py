"""
Cascade Factor Plugins.

Each plugin turns one AggregatedSnapshot into one CascadeFactor scored on
[0, 100], or returns None when its inputs are absent this cycle (the engine
then drops it and renormalizes the remaining weights).

Plugins are pure: any rolling context they need (recent mark prices, the
previous cycle's open interest) arrives inside the snapshot. New factors are
added by registering another plugin, never by changing the engine.

Default registry, in order:
    funding_extremity       |avg funding| vs. saturation; sign → crowded side
    open_interest_pressure  OI growth vs. previous cycle + venue concentration
    basis_dispersion        cross-exchange mark-price spread, adaptive once warm
    liquidation_proximity   share of the leveraged margin buffer already consumed
    realized_volatility     stdev of recent log returns of the average mark
"""

import math
from typing import TYPE_CHECKING, Iterator, Optional, Protocol, runtime_checkable

from liqcast.schemas.risk import CascadeFactor
from liqcast.schemas.snapshot import AggregatedSnapshot

if TYPE_CHECKING:
    from liqcast.engine.scoring import RiskEngineConfig


def _clamp_score(value: float) -> float:
    if not math.isfinite(value):
        return 0.0
    return min(100.0, max(0.0, value))


def _sign(value: float) -> int:
    if value > 0:
        return 1
    if value < 0:
        return -1
    return 0


def interpolate_score(value: float, elevated: float, high: float, critical: float) -> float:
    """
    Piecewise-linear score over three thresholds.

    0 → 0, elevated → 40, high → 60, critical → 80, 2x critical → 100.
    """
    if value <= 0:
        return 0.0
    if value >= critical:
        return min(100.0, 80.0 + (value / critical - 1.0) * 20.0)
    if value >= high:
        return 60.0 + (value - high) / (critical - high) * 20.0
    if value >= elevated:
        return 40.0 + (value - elevated) / (high - elevated) * 20.0
    return value / elevated * 40.0


@runtime_checkable
class FeaturePlugin(Protocol):
    """Capability every cascade factor implements."""

    name: str

    def compute(self, snapshot: AggregatedSnapshot, config: "RiskEngineConfig") -> Optional[CascadeFactor]:
        ...


# ── Plugins ───────────────────────────────────────────────────────────────


class FundingExtremity:
    """Positive funding means longs pay shorts: longs are the crowded side."""

    name = "funding_extremity"

    def compute(self, snapshot: AggregatedSnapshot, config: "RiskEngineConfig") -> Optional[CascadeFactor]:
        funding = snapshot.avg_funding_rate
        if funding is None:
            return None

        saturation = config.funding_saturation
        return CascadeFactor(
            name=self.name,
            score=_clamp_score(abs(funding) / saturation * 100.0),
            weight=config.weight_for(self.name),
            value=funding,
            threshold=saturation,
            description=(
                f"Avg funding {funding * 100:.4f}% across "
                f"{len(snapshot.funding_rate_by_exchange)} exchange(s)"
            ),
            bias=_sign(funding),
        )


class OpenInterestPressure:
    """
    Leverage build-up: growth of total OI since the previous cycle, blended
    with how concentrated OI is on one venue (only with 2+ venues reporting).
    """

    name = "open_interest_pressure"

    def compute(self, snapshot: AggregatedSnapshot, config: "RiskEngineConfig") -> Optional[CascadeFactor]:
        total = snapshot.total_open_interest_value
        if total is None or total <= 0:
            return None

        previous = snapshot.previous_open_interest
        shares = [v / total for v in snapshot.open_interest_by_exchange.values()]
        has_growth = previous is not None and previous > 0
        has_concentration = len(shares) >= 2
        if not has_growth and not has_concentration:
            return None

        growth = (total - previous) / previous if has_growth else 0.0
        growth_score = _clamp_score(max(0.0, growth) / config.oi_growth_saturation * 100.0)

        concentration_score = 0.0
        if has_concentration:
            n = len(shares)
            hhi = sum(s * s for s in shares)
            concentration_score = _clamp_score((hhi - 1.0 / n) / (1.0 - 1.0 / n) * 100.0)

        if has_growth and has_concentration:
            w = config.oi_concentration_share
            score = (1.0 - w) * growth_score + w * concentration_score
        elif has_growth:
            score = growth_score
        else:
            score = concentration_score

        return CascadeFactor(
            name=self.name,
            score=_clamp_score(score),
            weight=config.weight_for(self.name),
            value=growth,
            threshold=config.oi_growth_saturation,
            description=(
                f"OI ${total:,.0f}, growth {growth * 100:+.2f}% vs previous cycle, "
                f"concentration {concentration_score:.0f}/100"
            ),
        )


def quantile(sorted_values: list[float], q: float) -> float:
    """q-th quantile of already-sorted values, linear interpolation."""
    if not sorted_values:
        return 0.0
    pos = q * (len(sorted_values) - 1)
    lo = math.floor(pos)
    hi = math.ceil(pos)
    if lo == hi or sorted_values[lo] == sorted_values[hi]:
        return sorted_values[lo]
    frac = pos - lo
    return sorted_values[lo] * (1.0 - frac) + sorted_values[hi] * frac


def zscores(values: list[float]) -> list[float]:
    """Population z-scores; all zero when the values do not vary."""
    mean = math.fsum(values) / len(values)
    std = math.sqrt(math.fsum((v - mean) ** 2 for v in values) / len(values))
    if std <= 0:
        return [0.0] * len(values)
    return [(v - mean) / std for v in values]


def volatility_regime_multiplier(scores: list[float], config: "RiskEngineConfig") -> float:
    """
    Threshold multiplier from the stress regime of the spread.

    Mean |z| over the recent lookback is compared with the terciles of |z|
    over the whole history: below the lower one is calm, above the upper
    one is stressed. Too little history counts as normal.
    """
    calm, normal, stressed = config.basis_regime_multipliers
    if len(scores) < config.basis_regime_min_points:
        return normal

    magnitudes = [abs(z) for z in scores]
    recent = magnitudes[-config.basis_regime_lookback:]
    recent_stress = math.fsum(recent) / len(recent)

    ordered = sorted(magnitudes)
    low_pct, high_pct = config.basis_regime_percentiles
    if recent_stress < quantile(ordered, low_pct):
        return calm
    if recent_stress > quantile(ordered, high_pct):
        return stressed
    return normal


class BasisDispersion:
    """
    Spread between the highest and lowest exchange mark price.

    Cold (fewer than basis_min_history spreads carried): piecewise score over
    fixed thresholds. Warm: the z-score of the current spread against its own
    history, floored at the band whose percentile threshold the spread
    reaches. Percentile thresholds scale with the volatility regime.
    """

    name = "basis_dispersion"

    def compute(self, snapshot: AggregatedSnapshot, config: "RiskEngineConfig") -> Optional[CascadeFactor]:
        spread = snapshot.spread_pct
        if spread is None:
            return None

        history = snapshot.spread_history
        if len(history) < config.basis_min_history:
            score = interpolate_score(
                spread, config.basis_elevated_pct, config.basis_high_pct, config.basis_critical_pct,
            )
            critical = config.basis_critical_pct
            mode = "cold start"
        else:
            score, critical = self._warm_score(spread, history, config)
            mode = f"adaptive over {len(history)} cycles"

        return CascadeFactor(
            name=self.name,
            score=_clamp_score(score),
            weight=config.weight_for(self.name),
            value=spread,
            threshold=critical,
            description=(
                f"Cross-exchange spread {spread:.4f}% over "
                f"{len(snapshot.mark_price_by_exchange)} exchanges ({mode})"
            ),
        )

    @staticmethod
    def _warm_score(spread: float, history: list[float], config: "RiskEngineConfig") -> tuple[float, float]:
        mean = math.fsum(history) / len(history)
        std = math.sqrt(math.fsum((v - mean) ** 2 for v in history) / len(history))
        z = (spread - mean) / std if std > 0 else 0.0
        score = z * config.basis_zscore_scaling

        multiplier = volatility_regime_multiplier(zscores(history), config)
        ordered = sorted(history)
        elevated, high, critical = (quantile(ordered, p) * multiplier for p in config.basis_threshold_percentiles)

        # Thresholds of zero (a venue set that never diverged) carry no signal
        for threshold, floor in ((critical, 80.0), (high, 60.0), (elevated, 40.0)):
            if threshold > 0 and spread >= threshold:
                score = max(score, floor)
                break
        return score, critical


class LiquidationProximity:
    """
    How far price has already moved against the crowded side.

    Positions are assumed opened around the recent average mark at the
    configured leverage, so they liquidate after a 1/leverage adverse move.
    The score is the share of that buffer already consumed.
    """

    name = "liquidation_proximity"

    def compute(self, snapshot: AggregatedSnapshot, config: "RiskEngineConfig") -> Optional[CascadeFactor]:
        mark = snapshot.avg_mark_price
        funding = snapshot.avg_funding_rate
        history = snapshot.mark_price_history
        if mark is None or mark <= 0 or funding is None or funding == 0 or len(history) < 2:
            return None

        bias = _sign(funding)
        entry = math.fsum(history) / len(history)
        buffer = 1.0 / config.assumed_leverage
        liquidation_price = entry * (1.0 - bias * buffer)

        adverse_move = -bias * (mark - entry) / entry
        consumed = max(0.0, adverse_move) / buffer
        distance_pct = abs(mark - liquidation_price) / mark * 100.0

        return CascadeFactor(
            name=self.name,
            score=_clamp_score(consumed * 100.0),
            weight=config.weight_for(self.name),
            value=distance_pct,
            threshold=buffer * 100.0,
            description=(
                f"{'Longs' if bias > 0 else 'Shorts'} est. liquidation near "
                f"{liquidation_price:,.2f} ({distance_pct:.2f}% away)"
            ),
            bias=bias,
        )


class RealizedVolatility:
    """Population stdev of log returns over the carried mark history."""

    name = "realized_volatility"

    def compute(self, snapshot: AggregatedSnapshot, config: "RiskEngineConfig") -> Optional[CascadeFactor]:
        prices = [p for p in snapshot.mark_price_history if p > 0]
        if len(prices) < config.min_volatility_points:
            return None

        returns = [math.log(b / a) for a, b in zip(prices, prices[1:])]
        mean = math.fsum(returns) / len(returns)
        variance = math.fsum((r - mean) ** 2 for r in returns) / len(returns)
        vol_pct = math.sqrt(variance) * 100.0

        return CascadeFactor(
            name=self.name,
            score=_clamp_score(vol_pct / config.volatility_saturation_pct * 100.0),
            weight=config.weight_for(self.name),
            value=vol_pct,
            threshold=config.volatility_saturation_pct,
            description=f"Realized vol {vol_pct:.4f}% per interval over {len(returns)} returns",
        )


# ── Registry ──────────────────────────────────────────────────────────────


class FactorRegistry:
    """Ordered set of plugins; names are unique."""

    def __init__(self, plugins: Optional[list[FeaturePlugin]] = None):
        self._plugins: list[FeaturePlugin] = []
        for plugin in plugins or []:
            self.register(plugin)

    def register(self, plugin: FeaturePlugin) -> None:
        if not isinstance(plugin, FeaturePlugin):
            raise TypeError(f"{plugin!r} does not implement FeaturePlugin")
        if plugin.name in self.names:
            raise ValueError(f"Factor plugin already registered: {plugin.name}")
        self._plugins.append(plugin)

    @property
    def names(self) -> list[str]:
        return [p.name for p in self._plugins]

    def __iter__(self) -> Iterator[FeaturePlugin]:
        return iter(tuple(self._plugins))

    def __len__(self) -> int:
        return len(self._plugins)


def default_registry() -> FactorRegistry:
    return FactorRegistry([
        FundingExtremity(),
        OpenInterestPressure(),
        BasisDispersion(),
        LiquidationProximity(),
        RealizedVolatility(),
    ])
