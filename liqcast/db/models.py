"""
LiqCast SQLAlchemy Models.

Only the ground-truth shape the calibration job and backtests read, plus an
audit trail of calibration refits. Uses compatibility types for SQLite
(tests) + PostgreSQL (prod).
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from liqcast.db.compat import JSONType, UTCDateTime
from liqcast.db.engine import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CascadeEventRow(Base):
    """
    A detected liquidation cascade.

    id is the natural key "<symbol>:<direction>:<start_ms>", so inserting the
    same detection twice is a no-op.
    """

    __tablename__ = "cascade_events"
    __table_args__ = (
        UniqueConstraint("symbol", "direction", "start_time", name="uq_cascade_natural_key"),
        CheckConstraint("direction IN ('LONG_SQUEEZE', 'SHORT_SQUEEZE')", name="chk_cascade_direction"),
        Index("ix_cascade_symbol_start", "symbol", "start_time"),
        Index("ix_cascade_symbol_direction", "symbol", "direction"),
    )

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    direction: Mapped[str] = mapped_column(String(16), nullable=False)
    start_time: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    end_time: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    price_change_pct: Mapped[float] = mapped_column(Float, nullable=False)
    liquidation_volume_usd: Mapped[float] = mapped_column(Float, nullable=False)


class RiskScoreRow(Base):
    """One scored symbol at one moment."""

    __tablename__ = "risk_scores"
    __table_args__ = (
        Index("ix_risk_symbol_time", "symbol", "time"),
        Index("ix_risk_level_time", "risk_level", "time"),
    )

    time: Mapped[datetime] = mapped_column(UTCDateTime(), primary_key=True)
    symbol: Mapped[str] = mapped_column(String(32), primary_key=True)
    risk_score: Mapped[int] = mapped_column(Integer, nullable=False)
    risk_level: Mapped[str] = mapped_column(String(16), nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    prediction_direction: Mapped[Optional[str]] = mapped_column(String(16))
    prediction_probability: Mapped[Optional[float]] = mapped_column(Float)
    prediction_impact_usd: Mapped[Optional[float]] = mapped_column(Float)
    prediction_trigger_price: Mapped[Optional[float]] = mapped_column(Float)


class CalibrationRun(Base):
    """Append-only record of every calibration refit attempt."""

    __tablename__ = "calibration_runs"
    __table_args__ = (
        Index("ix_calibration_runs_created", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=_utcnow)
    published: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    version: Mapped[Optional[str]] = mapped_column(String(64))
    slope: Mapped[Optional[float]] = mapped_column(Float)
    intercept: Mapped[Optional[float]] = mapped_column(Float)
    n_samples: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    n_positive: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error: Mapped[Optional[str]] = mapped_column(Text)
    report: Mapped[dict] = mapped_column(JSONType(), nullable=False, default=dict)
