"""
Calibration Refit Job.

Reads the scores the engine recorded over a lookback window, labels each
one against ground-truth cascades, refits the logistic mapping plus the
per-range bins, and publishes the result to the CalibrationStore in one swap.

Labeling: a score at time t is positive when a cascade of the same symbol
starts within [t, t + horizon].

Failure handling: too few samples, a sample with only one outcome class, or
invalid fitted parameters leave the previous parameters in place; the run is
reported with published=False. The job never raises.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Sequence

import structlog

from liqcast.config import settings
from liqcast.engine.backtest import cascade_lead_time
from liqcast.engine.calibration import (
    DEFAULT_BIN_EDGES,
    CalibrationParams,
    LogisticFit,
    build_bins,
    fit_logistic_regression,
    validate_params,
    wilson_interval,
)
from liqcast.engine.calibration_store import CalibrationStore
from liqcast.errors import CalibrationFitFailure, CollaboratorFailure, CorruptCalibrationError
from liqcast.pipeline.channels import EventChannel
from liqcast.services.interfaces import GroundTruthRepository, RiskScoreReader

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CalibrationReport:
    """Outcome of one refit attempt."""
    published: bool
    window_start: datetime
    window_end: datetime
    symbols: tuple[str, ...]
    n_samples: int = 0
    n_positive: int = 0
    params: Optional[CalibrationParams] = None
    fit: Optional[LogisticFit] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    per_symbol_samples: dict[str, int] = field(default_factory=dict)
    confidence: float = 0.95

    @property
    def base_rate(self) -> float:
        return self.n_positive / self.n_samples if self.n_samples else 0.0

    @property
    def bin_intervals(self) -> list[dict[str, Any]]:
        """Observed rate and Wilson bounds per published bin."""
        if self.params is None:
            return []
        intervals = []
        for b in self.params.bins:
            lower, upper = wilson_interval(b.successes, b.trials, self.confidence)
            intervals.append({
                "lower_score": b.lower,
                "upper_score": b.upper,
                "trials": b.trials,
                "rate": round(b.rate, 6),
                "rate_lower": round(lower, 6),
                "rate_upper": round(upper, 6),
            })
        return intervals

    def to_dict(self) -> dict[str, Any]:
        return {
            "published": self.published,
            "window_start": self.window_start.isoformat(),
            "window_end": self.window_end.isoformat(),
            "symbols": list(self.symbols),
            "n_samples": self.n_samples,
            "n_positive": self.n_positive,
            "base_rate": round(self.base_rate, 6),
            "params": self.params.to_dict() if self.params else None,
            "fit": self.fit.to_dict() if self.fit else None,
            "error": self.error,
            "error_code": self.error_code,
            "per_symbol_samples": dict(self.per_symbol_samples),
            "confidence": self.confidence,
            "bin_intervals": self.bin_intervals,
        }


async def load_labeled_samples(
    scores: RiskScoreReader,
    ground_truth: GroundTruthRepository,
    symbols: Sequence[str],
    start: datetime,
    end: datetime,
    horizon: timedelta,
) -> tuple[list[tuple[float, int]], dict[str, int]]:
    """(risk_score, outcome) pairs for every recorded score in the window."""
    samples: list[tuple[float, int]] = []
    per_symbol: dict[str, int] = {}

    for symbol in symbols:
        records = await scores.get_risk_scores(symbol, start, end)
        events = await ground_truth.get_cascade_events(symbol, start, end + horizon)
        starts = sorted(e.start_time for e in events)

        for record in records:
            outcome = 1 if cascade_lead_time(starts, record.time, horizon) is not None else 0
            samples.append((float(record.risk_score), outcome))
        per_symbol[symbol] = len(records)

    return samples, per_symbol


async def fit_calibration_from_db(
    scores: RiskScoreReader,
    ground_truth: GroundTruthRepository,
    store: CalibrationStore,
    symbols: Sequence[str],
    lookback: timedelta = timedelta(days=30),
    horizon: timedelta = timedelta(minutes=60),
    min_samples: int = 30,
    regularization: float = 0.001,
    bin_edges: Sequence[float] = DEFAULT_BIN_EDGES,
    confidence: float = 0.95,
    now: Optional[datetime] = None,
) -> CalibrationReport:
    """
    Refit calibration from stored scores and ground truth, then publish.

    Returns a CalibrationReport in every case; published=False means the
    store still holds the previous parameters.
    """
    end = now or datetime.now(timezone.utc)
    start = end - lookback
    base = dict(window_start=start, window_end=end, symbols=tuple(symbols), confidence=confidence)

    try:
        samples, per_symbol = await load_labeled_samples(scores, ground_truth, symbols, start, end, horizon)
    except Exception as e:
        error = CollaboratorFailure(f"Loading calibration data failed: {e}", collaborator="ground_truth", cause=e)
        logger.error("calibration_load_failed", **error.to_dict())
        return CalibrationReport(published=False, error=error.message, error_code=error.error_code.value, **base)

    n_samples = len(samples)
    n_positive = sum(outcome for _, outcome in samples)
    counts = dict(n_samples=n_samples, n_positive=n_positive, per_symbol_samples=per_symbol)

    try:
        if n_samples < min_samples:
            raise CalibrationFitFailure(
                f"Insufficient samples: {n_samples} < {min_samples}",
                n_samples=n_samples, n_positive=n_positive,
            )
        if n_positive == 0 or n_positive == n_samples:
            raise CalibrationFitFailure(
                f"Samples contain a single outcome class ({n_positive}/{n_samples} positive)",
                n_samples=n_samples, n_positive=n_positive,
            )

        fit = fit_logistic_regression(
            samples,
            regularization=regularization,
            version=f"fit-{end.strftime('%Y%m%dT%H%M%SZ')}",
        )
        params = validate_params(replace(fit.params, bins=build_bins(samples, bin_edges)))
        store.publish(params)

    except (CalibrationFitFailure, CorruptCalibrationError) as e:
        logger.warning("calibration_not_published", **e.to_dict())
        return CalibrationReport(
            published=False, error=e.message, error_code=e.error_code.value, **base, **counts,
        )

    logger.info(
        "calibration_refit_published",
        version=params.version,
        n_samples=n_samples,
        n_positive=n_positive,
        converged=fit.converged,
    )
    return CalibrationReport(published=True, params=params, fit=fit, **base, **counts)


class CalibrationJob:
    """Scheduled wrapper: runs the refit, publishes the report, records the run."""

    def __init__(
        self,
        scores: RiskScoreReader,
        ground_truth: GroundTruthRepository,
        store: CalibrationStore,
        symbols: Optional[Sequence[str]] = None,
        runs=None,
        lookback: Optional[timedelta] = None,
        horizon: Optional[timedelta] = None,
        min_samples: Optional[int] = None,
        regularization: Optional[float] = None,
        confidence: Optional[float] = None,
    ):
        self.scores = scores
        self.ground_truth = ground_truth
        self.store = store
        self.symbols = list(symbols if symbols is not None else settings.symbols)
        self.runs = runs
        self.lookback = lookback or timedelta(days=settings.calibration_lookback_days)
        self.horizon = horizon or timedelta(minutes=settings.calibration_horizon_minutes)
        self.min_samples = min_samples if min_samples is not None else settings.calibration_min_samples
        self.regularization = (
            regularization if regularization is not None else settings.calibration_regularization
        )
        self.confidence = confidence if confidence is not None else settings.calibration_confidence
        self.reports: EventChannel[CalibrationReport] = EventChannel("calibration_reports")
        self.last_report: Optional[CalibrationReport] = None

    async def run(self, now: Optional[datetime] = None) -> CalibrationReport:
        report = await fit_calibration_from_db(
            self.scores,
            self.ground_truth,
            self.store,
            self.symbols,
            lookback=self.lookback,
            horizon=self.horizon,
            min_samples=self.min_samples,
            regularization=self.regularization,
            confidence=self.confidence,
            now=now,
        )
        self.last_report = report
        self.reports.publish(report)

        if self.runs is not None:
            try:
                await self.runs.record_run(report.to_dict())
            except Exception as e:
                error = CollaboratorFailure(
                    f"Recording calibration run failed: {e}", collaborator="calibration_runs", cause=e,
                )
                logger.error("calibration_run_record_failed", **error.to_dict())

        return report

    async def restore_latest(self) -> Optional[CalibrationParams]:
        """Load the most recently published parameters from the audit trail."""
        if self.runs is None:
            return None
        run = await self.runs.latest_published()
        if run is None or not run.report.get("params"):
            return None
        return self.store.load(run.report["params"])
