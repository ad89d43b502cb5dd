"""
Cascade risk output schemas.

CascadeRisk is produced once per scored symbol per cycle and is immutable
after creation; persistence and alerting collaborators take it as-is.
"""

from datetime import datetime, timezone
from enum import StrEnum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class RiskLevel(StrEnum):
    LOW = "low"
    MODERATE = "moderate"
    ELEVATED = "elevated"
    HIGH = "high"
    CRITICAL = "critical"


class SqueezeDirection(StrEnum):
    LONG_SQUEEZE = "long_squeeze"     # Downward cascade, crowded longs
    SHORT_SQUEEZE = "short_squeeze"   # Upward cascade, crowded shorts


class CascadeDirection(StrEnum):
    """Ground-truth direction labels as stored with cascade events."""
    LONG_SQUEEZE = "LONG_SQUEEZE"
    SHORT_SQUEEZE = "SHORT_SQUEEZE"


class CascadeFactor(BaseModel):
    """A named sub-score feeding the composite risk score."""

    model_config = ConfigDict(frozen=True)

    name: str
    score: float = Field(ge=0.0, le=100.0)
    weight: float
    value: float                      # Raw measurement behind the score
    threshold: float                  # Value at which the score saturates
    description: str
    bias: int = 0                     # +1 longs crowded, -1 shorts crowded, 0 none


class CascadePrediction(BaseModel):
    model_config = ConfigDict(frozen=True)

    direction: SqueezeDirection
    probability: float = Field(gt=0.0, lt=1.0)
    estimated_impact: float           # USD
    trigger_price: float
    trigger_distance: float           # % from current mark
    time_window: str


class CascadeRisk(BaseModel):
    """Risk assessment for one symbol in one cycle."""

    model_config = ConfigDict(frozen=True)

    symbol: str
    risk_score: int = Field(ge=0, le=100)
    risk_level: RiskLevel
    confidence: float                 # Calibrated P(cascade | risk_score)
    confidence_lower: float = 0.0     # Wilson bounds of the score's calibration bin
    confidence_upper: float = 1.0
    calibration_samples: int = 0      # Outcomes behind those bounds
    factors: tuple[CascadeFactor, ...] = ()
    prediction: Optional[CascadePrediction] = None
    timestamp: float                  # Snapshot timestamp, ms epoch


class RiskPrediction(BaseModel):
    """Flattened prediction record for downstream consumers."""

    model_config = ConfigDict(frozen=True)

    symbol: str
    risk_score: int
    confidence: float
    direction: CascadeDirection
    trigger_price: float
    estimated_impact_usd: float
    timestamp: float


class CascadeEvent(BaseModel):
    """A detected liquidation cascade (ground truth for calibration)."""

    model_config = ConfigDict(from_attributes=True)

    symbol: str
    direction: CascadeDirection
    start_time: datetime
    end_time: datetime
    price_change_pct: float
    liquidation_volume_usd: float


class RiskScoreRecord(BaseModel):
    """A CascadeRisk as persisted: the raw score recorded at each moment."""

    model_config = ConfigDict(from_attributes=True)

    time: datetime
    symbol: str
    risk_score: int = Field(ge=0, le=100)
    risk_level: RiskLevel
    confidence: float
    prediction_direction: Optional[CascadeDirection] = None
    prediction_probability: Optional[float] = None
    prediction_impact_usd: Optional[float] = None
    prediction_trigger_price: Optional[float] = None

    @classmethod
    def from_risk(cls, risk: CascadeRisk) -> "RiskScoreRecord":
        prediction = risk.prediction
        direction = None
        if prediction is not None:
            direction = (
                CascadeDirection.LONG_SQUEEZE
                if prediction.direction == SqueezeDirection.LONG_SQUEEZE
                else CascadeDirection.SHORT_SQUEEZE
            )
        return cls(
            time=datetime.fromtimestamp(risk.timestamp / 1000.0, tz=timezone.utc),
            symbol=risk.symbol,
            risk_score=risk.risk_score,
            risk_level=risk.risk_level,
            confidence=risk.confidence,
            prediction_direction=direction,
            prediction_probability=prediction.probability if prediction else None,
            prediction_impact_usd=prediction.estimated_impact if prediction else None,
            prediction_trigger_price=prediction.trigger_price if prediction else None,
        )
