"""
Cascade Factor Plugin Tests.

Each plugin is checked for its score, its crowded-side bias, and for
returning None when its inputs are absent.
"""

import math

import pytest

from liqcast.engine.factors import (
    BasisDispersion,
    FactorRegistry,
    FeaturePlugin,
    FundingExtremity,
    LiquidationProximity,
    OpenInterestPressure,
    RealizedVolatility,
    default_registry,
    interpolate_score,
    quantile,
    volatility_regime_multiplier,
)
from liqcast.engine.scoring import RiskEngineConfig
from liqcast.schemas.risk import CascadeFactor


@pytest.fixture
def config():
    return RiskEngineConfig()


class TestInterpolateScore:
    @pytest.mark.parametrize("value,expected", [
        (0.0, 0.0), (0.15, 40.0), (0.30, 60.0), (0.60, 80.0), (1.20, 100.0), (5.0, 100.0),
    ])
    def test_anchor_points(self, value, expected):
        assert interpolate_score(value, 0.15, 0.30, 0.60) == pytest.approx(expected)

    def test_monotone(self):
        values = [interpolate_score(x / 100, 0.15, 0.30, 0.60) for x in range(0, 150)]
        assert values == sorted(values)


class TestFundingExtremity:
    def test_positive_funding_crowds_longs(self, config, make_snapshot):
        factor = FundingExtremity().compute(make_snapshot(avg_funding_rate=0.001), config)
        assert factor.score == pytest.approx(50.0)
        assert factor.bias == 1
        assert factor.weight == pytest.approx(0.25)

    def test_negative_funding_crowds_shorts(self, config, make_snapshot):
        factor = FundingExtremity().compute(make_snapshot(avg_funding_rate=-0.004), config)
        assert factor.score == 100.0
        assert factor.bias == -1

    def test_missing_funding(self, config, make_snapshot):
        assert FundingExtremity().compute(make_snapshot(avg_funding_rate=None), config) is None


class TestOpenInterestPressure:
    def test_growth_and_even_split(self, config, make_snapshot):
        snap = make_snapshot(
            total_open_interest_value=2_050_000.0,
            open_interest_by_exchange={"binance": 1_025_000.0, "bybit": 1_025_000.0},
            previous_open_interest=2_000_000.0,
        )
        factor = OpenInterestPressure().compute(snap, config)
        # growth 2.5% → 50; even split → concentration 0; blend 0.6 * 50
        assert factor.score == pytest.approx(30.0)
        assert factor.bias == 0

    def test_concentration_only(self, config, make_snapshot):
        snap = make_snapshot(
            total_open_interest_value=1_000_000.0,
            open_interest_by_exchange={"binance": 1_000_000.0, "bybit": 0.0},
            previous_open_interest=None,
        )
        assert OpenInterestPressure().compute(snap, config).score == pytest.approx(100.0)

    def test_single_venue_without_history(self, config, make_snapshot):
        snap = make_snapshot(
            total_open_interest_value=1_000_000.0,
            open_interest_by_exchange={"binance": 1_000_000.0},
            previous_open_interest=None,
        )
        assert OpenInterestPressure().compute(snap, config) is None

    def test_shrinking_oi_scores_zero_growth(self, config, make_snapshot):
        snap = make_snapshot(
            total_open_interest_value=900_000.0,
            open_interest_by_exchange={"binance": 900_000.0},
            previous_open_interest=1_000_000.0,
        )
        assert OpenInterestPressure().compute(snap, config).score == 0.0


class TestBasisDispersion:
    def test_spread_scored(self, config, make_snapshot):
        snap = make_snapshot(
            avg_mark_price=100.0,
            mark_price_by_exchange={"binance": 99.85, "bybit": 100.15},
        )
        factor = BasisDispersion().compute(snap, config)
        assert factor.value == pytest.approx(0.30)
        assert factor.score == pytest.approx(60.0)

    def test_single_exchange_excluded(self, config, make_snapshot):
        snap = make_snapshot(mark_price_by_exchange={"binance": 100.0})
        assert BasisDispersion().compute(snap, config) is None

    def test_short_history_uses_fixed_thresholds(self, config, make_snapshot):
        snap = make_snapshot(
            mark_price_by_exchange={"binance": 99.85, "bybit": 100.15},
            spread_history=[0.3] * 10,
        )
        factor = BasisDispersion().compute(snap, config)
        assert factor.score == pytest.approx(60.0)
        assert factor.threshold == pytest.approx(config.basis_critical_pct)
        assert "cold start" in factor.description


class TestBasisDispersionWarm:
    """Once enough spreads are carried, the spread is judged against its own history."""

    @pytest.fixture
    def warm_config(self):
        return RiskEngineConfig(basis_min_history=20)

    def _snapshot(self, make_snapshot, marks, earlier):
        base = make_snapshot(mark_price_by_exchange=marks)
        return base.model_copy(update={"spread_history": earlier + [base.spread_pct]})

    def test_usual_spread_scores_low(self, warm_config, make_snapshot):
        # 0.2% is elevated on fixed thresholds but is the mean of this venue set
        snap = self._snapshot(make_snapshot, {"binance": 99.9, "bybit": 100.1}, [0.1, 0.3] * 10)
        factor = BasisDispersion().compute(snap, warm_config)

        assert factor.score == pytest.approx(0.0, abs=1e-6)
        assert "adaptive" in factor.description

        cold = BasisDispersion().compute(snap.model_copy(update={"spread_history": []}), warm_config)
        assert cold.score > 40.0

    def test_spread_at_top_percentile_floored_critical(self, warm_config, make_snapshot):
        spread = make_snapshot(mark_price_by_exchange={"binance": 99.85, "bybit": 100.15}).spread_pct
        snap = self._snapshot(make_snapshot, {"binance": 99.85, "bybit": 100.15}, [0.1] * 10 + [spread] * 10)
        factor = BasisDispersion().compute(snap, warm_config)

        # z is about 0.9, so the score comes from the percentile band
        assert factor.score == pytest.approx(80.0)
        assert factor.threshold == pytest.approx(spread)

    def test_extreme_spread_scored_by_zscore(self, warm_config, make_snapshot):
        snap = self._snapshot(make_snapshot, {"binance": 99.0, "bybit": 101.0}, [0.10, 0.12] * 20)
        factor = BasisDispersion().compute(snap, warm_config)
        assert factor.score == pytest.approx(100.0)

    def test_constant_zero_history(self, warm_config, make_snapshot):
        snap = self._snapshot(make_snapshot, {"binance": 100.0, "bybit": 100.0}, [0.0] * 30)
        factor = BasisDispersion().compute(snap, warm_config)
        assert factor.score == 0.0


class TestVolatilityRegime:
    @pytest.fixture
    def regime_config(self):
        return RiskEngineConfig(basis_regime_lookback=10, basis_regime_min_points=60)

    def test_too_little_history_is_normal(self, regime_config):
        assert volatility_regime_multiplier([3.0] * 59, regime_config) == 1.0

    def test_calm(self, regime_config):
        assert volatility_regime_multiplier([1.0] * 50 + [0.1] * 10, regime_config) == 0.75

    def test_stressed(self, regime_config):
        assert volatility_regime_multiplier([0.1] * 50 + [-3.0] * 10, regime_config) == 1.5

    def test_quantile_interpolates(self):
        assert quantile([0.0, 1.0, 2.0, 3.0, 4.0], 0.9) == pytest.approx(3.6)
        assert quantile([], 0.5) == 0.0


class TestLiquidationProximity:
    def test_long_buffer_consumed(self, config, make_snapshot):
        # Entry 100, 20x → 5% buffer; price at 97.5 has used half of it
        snap = make_snapshot(
            avg_mark_price=97.5,
            avg_funding_rate=0.001,
            mark_price_history=[100.0, 100.0, 100.0, 100.0],
        )
        factor = LiquidationProximity().compute(snap, config)
        assert factor.score == pytest.approx(50.0)
        assert factor.bias == 1

    def test_favourable_move_scores_zero(self, config, make_snapshot):
        snap = make_snapshot(
            avg_mark_price=103.0,
            avg_funding_rate=0.001,
            mark_price_history=[100.0, 100.0],
        )
        assert LiquidationProximity().compute(snap, config).score == 0.0

    def test_short_side(self, config, make_snapshot):
        snap = make_snapshot(
            avg_mark_price=102.5,
            avg_funding_rate=-0.001,
            mark_price_history=[100.0, 100.0],
        )
        factor = LiquidationProximity().compute(snap, config)
        assert factor.bias == -1
        assert factor.score == pytest.approx(50.0)

    @pytest.mark.parametrize("overrides", [
        {"avg_funding_rate": 0.0},
        {"avg_funding_rate": None},
        {"mark_price_history": [100.0]},
        {"avg_mark_price": None},
    ])
    def test_missing_inputs(self, config, make_snapshot, overrides):
        values = {"mark_price_history": [100.0, 100.0], **overrides}
        assert LiquidationProximity().compute(make_snapshot(**values), config) is None


class TestRealizedVolatility:
    def test_flat_prices_zero_vol(self, config, make_snapshot):
        snap = make_snapshot(mark_price_history=[100.0] * 6)
        assert RealizedVolatility().compute(snap, config).score == 0.0

    def test_alternating_prices(self, config, make_snapshot):
        history = [100.0, 101.0, 100.0, 101.0, 100.0]
        factor = RealizedVolatility().compute(make_snapshot(mark_price_history=history), config)
        r = math.log(1.01)
        assert factor.value == pytest.approx(r * 100.0)
        assert factor.score == pytest.approx(min(100.0, r * 100.0 * 100.0))

    def test_short_history(self, config, make_snapshot):
        snap = make_snapshot(mark_price_history=[100.0, 101.0, 102.0])
        assert RealizedVolatility().compute(snap, config) is None


class _ConstantFactor:
    name = "constant"

    def compute(self, snapshot, config):
        return CascadeFactor(
            name=self.name, score=42.0, weight=1.0, value=42.0, threshold=100.0, description="constant",
        )


class TestRegistry:
    def test_default_order(self):
        assert default_registry().names == [
            "funding_extremity",
            "open_interest_pressure",
            "basis_dispersion",
            "liquidation_proximity",
            "realized_volatility",
        ]

    def test_plugins_satisfy_protocol(self):
        assert all(isinstance(p, FeaturePlugin) for p in default_registry())

    def test_register_new_plugin(self):
        registry = default_registry()
        registry.register(_ConstantFactor())
        assert len(registry) == 6
        assert registry.names[-1] == "constant"

    def test_duplicate_name_rejected(self):
        registry = FactorRegistry([_ConstantFactor()])
        with pytest.raises(ValueError):
            registry.register(_ConstantFactor())

    def test_non_plugin_rejected(self):
        with pytest.raises(TypeError):
            FactorRegistry().register(object())
