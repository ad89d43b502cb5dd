"""
Cascade Scoring Engine — snapshot + calibration → CascadeRisk.

Pipeline per symbol:
1. Run every registered factor plugin (None → factor excluded)
2. raw = Σ(w_i × s_i) / Σ(w_i) over computed factors, clamped to [0, 100]
3. risk_score = round-half-up(raw); level from fixed bands; confidence is the
   calibrated probability with the Wilson band of the score's calibration bin
4. Directional prediction when raw ≥ prediction_min_score and the dominant
   imbalance factor has a side
5. timestamp = snapshot timestamp

score() is a pure function of (snapshot, params, config): same input, same
output. The only clock in the result is the snapshot's own timestamp.
"""

import math
from dataclasses import dataclass, field
from typing import Iterable, Optional

import structlog

from liqcast.config import settings
from liqcast.engine.calibration import CalibrationParams, calibrate_probability, calibrate_with_interval
from liqcast.engine.calibration_store import CalibrationStore
from liqcast.engine.factors import FactorRegistry, default_registry
from liqcast.schemas.risk import (
    CascadeDirection,
    CascadeFactor,
    CascadePrediction,
    CascadeRisk,
    RiskLevel,
    RiskPrediction,
    SqueezeDirection,
)
from liqcast.schemas.snapshot import AggregatedSnapshot

logger = structlog.get_logger(__name__)

# ── Configuration ─────────────────────────────────────────────────────────

DEFAULT_WEIGHTS: dict[str, float] = {
    "funding_extremity": 0.25,
    "open_interest_pressure": 0.20,
    "basis_dispersion": 0.15,
    "liquidation_proximity": 0.25,
    "realized_volatility": 0.15,
}

# (lower bound inclusive, level), highest first
RISK_LEVEL_BANDS: tuple[tuple[int, RiskLevel], ...] = (
    (80, RiskLevel.CRITICAL),
    (60, RiskLevel.HIGH),
    (40, RiskLevel.ELEVATED),
    (20, RiskLevel.MODERATE),
)

# (dominant factor score lower bound, label), highest first
TIME_WINDOW_BANDS: tuple[tuple[float, str], ...] = (
    (80.0, "1-4 hours"),
    (60.0, "4-12 hours"),
)
DEFAULT_TIME_WINDOW = "12-24 hours"


@dataclass(frozen=True)
class RiskEngineConfig:
    """Factor weights, factor scaling constants, and prediction constants."""
    weights: dict[str, float] = field(default_factory=lambda: dict(DEFAULT_WEIGHTS))

    # Prediction
    prediction_min_score: float = 20.0
    base_participation_rate: float = 0.03     # Share of OI liquidated at severity 0
    participation_slope: float = 0.07         # Extra share at severity 1
    min_trigger_distance_pct: float = 2.0
    max_trigger_distance_pct: float = 6.0

    # Factor scaling
    assumed_leverage: float = 20.0
    funding_saturation: float = 0.002         # |funding| scoring 100
    oi_growth_saturation: float = 0.05        # OI growth per cycle scoring 100
    oi_concentration_share: float = 0.4       # Blend weight of venue concentration
    basis_elevated_pct: float = 0.15
    basis_high_pct: float = 0.30
    basis_critical_pct: float = 0.60
    basis_min_history: int = 1440             # Spreads carried before the adaptive path
    basis_zscore_scaling: float = 20.0        # z=2 → 40, z=4 → 80
    basis_threshold_percentiles: tuple[float, float, float] = (0.90, 0.95, 0.99)
    basis_regime_percentiles: tuple[float, float] = (0.33, 0.67)
    basis_regime_multipliers: tuple[float, float, float] = (0.75, 1.0, 1.5)   # calm, normal, stressed
    basis_regime_lookback: int = 4320
    basis_regime_min_points: int = 60
    volatility_saturation_pct: float = 1.0    # Per-interval stdev scoring 100
    min_volatility_points: int = 5

    # Uncertainty band
    interval_confidence: float = 0.95

    def __post_init__(self):
        if any(w < 0 or not math.isfinite(w) for w in self.weights.values()):
            raise ValueError("factor weights must be finite and non-negative")
        if self.min_trigger_distance_pct > self.max_trigger_distance_pct:
            raise ValueError("min_trigger_distance_pct must not exceed max_trigger_distance_pct")
        if self.assumed_leverage <= 0:
            raise ValueError("assumed_leverage must be positive")
        if self.basis_min_history < 2:
            raise ValueError("basis_min_history must be >= 2")
        if not 0.0 < self.interval_confidence < 1.0:
            raise ValueError("interval_confidence must be in (0, 1)")

    def weight_for(self, name: str) -> float:
        return self.weights.get(name, 0.0)

    @classmethod
    def from_settings(cls) -> "RiskEngineConfig":
        return cls(
            weights={
                "funding_extremity": settings.weight_funding_extremity,
                "open_interest_pressure": settings.weight_open_interest_pressure,
                "basis_dispersion": settings.weight_basis_dispersion,
                "liquidation_proximity": settings.weight_liquidation_proximity,
                "realized_volatility": settings.weight_realized_volatility,
            },
            prediction_min_score=settings.prediction_min_score,
            base_participation_rate=settings.base_participation_rate,
            participation_slope=settings.participation_slope,
            min_trigger_distance_pct=settings.min_trigger_distance_pct,
            max_trigger_distance_pct=settings.max_trigger_distance_pct,
            assumed_leverage=settings.assumed_leverage,
            basis_min_history=settings.basis_min_history,
            interval_confidence=settings.calibration_confidence,
        )


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def risk_level_for(risk_score: float) -> RiskLevel:
    """≥80 critical, ≥60 high, ≥40 elevated, ≥20 moderate, else low."""
    for lower, level in RISK_LEVEL_BANDS:
        if risk_score >= lower:
            return level
    return RiskLevel.LOW


def combine_factors(factors: Iterable[CascadeFactor]) -> Optional[float]:
    """Normalized weighted mean of factor scores; None when total weight is 0."""
    factors = list(factors)
    total_weight = math.fsum(f.weight for f in factors)
    if total_weight <= 0:
        return None
    raw = math.fsum(f.weight * f.score for f in factors) / total_weight
    return min(100.0, max(0.0, raw))


def dominant_imbalance_factor(factors: Iterable[CascadeFactor]) -> Optional[CascadeFactor]:
    """Highest weighted score among factors that name a crowded side."""
    best: Optional[CascadeFactor] = None
    for f in factors:
        if f.bias == 0:
            continue
        if best is None or f.weight * f.score > best.weight * best.score:
            best = f
    return best


class CascadeScoringEngine:
    """
    Scores AggregatedSnapshots.

    Calibration parameters come from the store once per call to score_all(),
    so a publish in the middle of a cycle never splits it across two sets.
    """

    def __init__(
        self,
        config: Optional[RiskEngineConfig] = None,
        registry: Optional[FactorRegistry] = None,
        calibration: Optional[CalibrationStore] = None,
    ):
        self.config = config or RiskEngineConfig()
        self.registry = registry or default_registry()
        self.calibration = calibration or CalibrationStore()

    def current_params(self) -> CalibrationParams:
        return self.calibration.current()

    def score(
        self,
        snapshot: AggregatedSnapshot,
        params: Optional[CalibrationParams] = None,
    ) -> Optional[CascadeRisk]:
        """
        Score one snapshot.

        Returns None (and logs) when the symbol had no validated inputs or
        none of the factors could be computed.
        """
        params = params or self.current_params()

        if not snapshot.has_inputs:
            logger.info("symbol_skipped", symbol=snapshot.symbol, reason="no_validated_inputs")
            return None

        factors = tuple(
            factor
            for plugin in self.registry
            if (factor := plugin.compute(snapshot, self.config)) is not None and factor.weight > 0
        )
        raw = combine_factors(factors)
        if raw is None:
            logger.info("symbol_skipped", symbol=snapshot.symbol, reason="no_computable_factors")
            return None

        risk_score = round_half_up(raw)
        calibrated = calibrate_with_interval(risk_score, params, confidence=self.config.interval_confidence)
        return CascadeRisk(
            symbol=snapshot.symbol,
            risk_score=risk_score,
            risk_level=risk_level_for(risk_score),
            confidence=calibrated.probability,
            confidence_lower=calibrated.lower,
            confidence_upper=calibrated.upper,
            calibration_samples=calibrated.bin_sample_size,
            factors=factors,
            prediction=self._predict(snapshot, factors, raw, params),
            timestamp=snapshot.timestamp,
        )

    def score_all(
        self,
        snapshots: Iterable[AggregatedSnapshot],
        params: Optional[CalibrationParams] = None,
    ) -> list[CascadeRisk]:
        params = params or self.current_params()
        risks = []
        for snapshot in snapshots:
            risk = self.score(snapshot, params)
            if risk is not None:
                risks.append(risk)
        return risks

    def _predict(
        self,
        snapshot: AggregatedSnapshot,
        factors: tuple[CascadeFactor, ...],
        raw: float,
        params: CalibrationParams,
    ) -> Optional[CascadePrediction]:
        cfg = self.config
        if raw < cfg.prediction_min_score:
            return None

        dominant = dominant_imbalance_factor(factors)
        price = snapshot.reference_price
        if dominant is None or price is None:
            return None

        direction = SqueezeDirection.LONG_SQUEEZE if dominant.bias > 0 else SqueezeDirection.SHORT_SQUEEZE
        severity = raw / 100.0

        total_oi = max(0.0, snapshot.total_open_interest_value or 0.0)
        estimated_impact = total_oi * (cfg.base_participation_rate + severity * cfg.participation_slope)

        span = cfg.max_trigger_distance_pct - cfg.min_trigger_distance_pct
        trigger_distance = max(cfg.min_trigger_distance_pct, cfg.max_trigger_distance_pct - severity * span)
        if direction == SqueezeDirection.LONG_SQUEEZE:
            trigger_price = price * (1.0 - trigger_distance / 100.0)
        else:
            trigger_price = price * (1.0 + trigger_distance / 100.0)

        time_window = DEFAULT_TIME_WINDOW
        for lower, label in TIME_WINDOW_BANDS:
            if dominant.score >= lower:
                time_window = label
                break

        return CascadePrediction(
            direction=direction,
            probability=calibrate_probability(raw, params),
            estimated_impact=estimated_impact,
            trigger_price=trigger_price,
            trigger_distance=trigger_distance,
            time_window=time_window,
        )


def to_predictions(risks: Iterable[CascadeRisk]) -> list[RiskPrediction]:
    """Flatten risks that carry a prediction into RiskPrediction records."""
    return [
        RiskPrediction(
            symbol=r.symbol,
            risk_score=r.risk_score,
            confidence=r.confidence,
            direction=(
                CascadeDirection.LONG_SQUEEZE
                if r.prediction.direction == SqueezeDirection.LONG_SQUEEZE
                else CascadeDirection.SHORT_SQUEEZE
            ),
            trigger_price=r.prediction.trigger_price,
            estimated_impact_usd=r.prediction.estimated_impact,
            timestamp=r.timestamp,
        )
        for r in risks
        if r.prediction is not None
    ]
