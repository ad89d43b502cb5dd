"""
Backtest Evaluation — stored risk scores vs. ground-truth cascades.

For each stored score at time t:
    predicted = risk_score >= score_threshold AND confidence >= confidence_threshold
    actual    = some cascade of the same symbol starts within [t, t + horizon]

Baselines:
- naive (always "no cascade"): F1 = 0
- random at the same prediction rate p with base rate q: E[F1] = 2pq / (p + q)

Scores and cascades are independent data sources; this module only joins
them in time.
"""

import bisect
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, Optional, Protocol, Sequence

import structlog

logger = structlog.get_logger(__name__)


class ScorePoint(Protocol):
    time: datetime
    risk_score: int
    confidence: float


@dataclass(frozen=True)
class BacktestConfig:
    risk_score_threshold: float = 60.0
    confidence_threshold: float = 0.0
    horizon_minutes: int = 60

    @property
    def horizon(self) -> timedelta:
        return timedelta(minutes=self.horizon_minutes)


@dataclass(frozen=True)
class ConfusionMatrix:
    tp: int = 0
    fp: int = 0
    tn: int = 0
    fn: int = 0

    @property
    def total(self) -> int:
        return self.tp + self.fp + self.tn + self.fn

    def __add__(self, other: "ConfusionMatrix") -> "ConfusionMatrix":
        return ConfusionMatrix(
            tp=self.tp + other.tp,
            fp=self.fp + other.fp,
            tn=self.tn + other.tn,
            fn=self.fn + other.fn,
        )


@dataclass(frozen=True)
class BacktestResult:
    """Metrics for one symbol, or micro-averaged over several."""
    precision: float
    recall: float
    f1_score: float
    false_positive_rate: float
    average_lead_time_minutes: float
    prediction_rate: float
    base_rate: float
    random_f1: float
    naive_f1: float
    confusion: ConfusionMatrix
    cascade_events: int
    config: BacktestConfig
    per_symbol: dict[str, "BacktestResult"] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "precision": round(self.precision, 4),
            "recall": round(self.recall, 4),
            "f1_score": round(self.f1_score, 4),
            "false_positive_rate": round(self.false_positive_rate, 4),
            "average_lead_time_minutes": round(self.average_lead_time_minutes, 2),
            "prediction_rate": round(self.prediction_rate, 4),
            "base_rate": round(self.base_rate, 4),
            "baselines": {"random_f1": round(self.random_f1, 4), "naive_f1": self.naive_f1},
            "confusion": {
                "tp": self.confusion.tp,
                "fp": self.confusion.fp,
                "tn": self.confusion.tn,
                "fn": self.confusion.fn,
            },
            "evaluation_points": self.confusion.total,
            "cascade_events": self.cascade_events,
        }


def _safe_divide(numerator: float, denominator: float) -> float:
    return numerator / denominator if denominator > 0 else 0.0


def cascade_lead_time(
    sorted_starts: Sequence[datetime], at: datetime, horizon: timedelta,
) -> Optional[timedelta]:
    """Lead time to the first cascade starting in [at, at + horizon], else None."""
    i = bisect.bisect_left(sorted_starts, at)
    if i < len(sorted_starts) and sorted_starts[i] <= at + horizon:
        return sorted_starts[i] - at
    return None


def _result(
    confusion: ConfusionMatrix,
    lead_time_minutes: float,
    cascade_events: int,
    config: BacktestConfig,
    per_symbol: Optional[dict[str, BacktestResult]] = None,
) -> BacktestResult:
    tp, fp, tn, fn = confusion.tp, confusion.fp, confusion.tn, confusion.fn
    total = confusion.total
    precision = _safe_divide(tp, tp + fp)
    recall = _safe_divide(tp, tp + fn)
    prediction_rate = _safe_divide(tp + fp, total)
    base_rate = _safe_divide(tp + fn, total)

    return BacktestResult(
        precision=precision,
        recall=recall,
        f1_score=_safe_divide(2 * precision * recall, precision + recall),
        false_positive_rate=_safe_divide(fp, fp + tn),
        average_lead_time_minutes=lead_time_minutes,
        prediction_rate=prediction_rate,
        base_rate=base_rate,
        random_f1=_safe_divide(2 * prediction_rate * base_rate, prediction_rate + base_rate),
        naive_f1=0.0,
        confusion=confusion,
        cascade_events=cascade_events,
        config=config,
        per_symbol=per_symbol or {},
    )


def evaluate_backtest(
    scores: Iterable[ScorePoint],
    cascade_starts: Iterable[datetime],
    config: Optional[BacktestConfig] = None,
) -> BacktestResult:
    """Evaluate one symbol's stored scores against its cascade start times."""
    config = config or BacktestConfig()
    starts = sorted(cascade_starts)
    horizon = config.horizon

    tp = fp = tn = fn = 0
    lead_sum = timedelta(0)

    for score in scores:
        predicted = (
            score.risk_score >= config.risk_score_threshold
            and score.confidence >= config.confidence_threshold
        )
        lead = cascade_lead_time(starts, score.time, horizon)
        if predicted and lead is not None:
            tp += 1
            lead_sum += lead
        elif predicted:
            fp += 1
        elif lead is not None:
            fn += 1
        else:
            tn += 1

    lead_minutes = lead_sum.total_seconds() / 60.0 / tp if tp else 0.0
    return _result(ConfusionMatrix(tp, fp, tn, fn), lead_minutes, len(starts), config)


def combine_results(results: dict[str, BacktestResult], config: BacktestConfig) -> BacktestResult:
    """Micro-average: sum confusion matrices, weight lead time by true positives."""
    confusion = ConfusionMatrix()
    lead_weighted = 0.0
    cascades = 0
    for result in results.values():
        confusion = confusion + result.confusion
        lead_weighted += result.average_lead_time_minutes * result.confusion.tp
        cascades += result.cascade_events

    lead_minutes = _safe_divide(lead_weighted, confusion.tp)
    return _result(confusion, lead_minutes, cascades, config, per_symbol=dict(results))


async def run_backtest(
    scores_reader,
    ground_truth,
    symbols: list[str],
    start: datetime,
    end: datetime,
    config: Optional[BacktestConfig] = None,
) -> BacktestResult:
    """
    Load scores and cascades per symbol, evaluate, and micro-average.

    scores_reader implements RiskScoreReader; ground_truth implements
    GroundTruthRepository. Cascades are loaded up to end + horizon so scores
    near the window end can still match.
    """
    config = config or BacktestConfig()
    per_symbol: dict[str, BacktestResult] = {}

    for symbol in symbols:
        scores = await scores_reader.get_risk_scores(symbol, start, end)
        events = await ground_truth.get_cascade_events(symbol, start, end + config.horizon)
        per_symbol[symbol] = evaluate_backtest(scores, [e.start_time for e in events], config)

    combined = combine_results(per_symbol, config)
    logger.info("backtest_completed", symbols=symbols, **combined.to_dict())
    return combined
