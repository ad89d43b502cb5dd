"""
Backtest Evaluation Tests.

Scores are joined to cascade starts within [t, t + horizon]; metrics and
baselines are derived from the resulting confusion matrix.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import pytest

from liqcast.engine.backtest import (
    BacktestConfig,
    ConfusionMatrix,
    cascade_lead_time,
    combine_results,
    evaluate_backtest,
    run_backtest,
)

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


@dataclass
class _Score:
    time: datetime
    risk_score: int
    confidence: float = 0.5


@dataclass
class _Event:
    start_time: datetime


class _Reader:
    def __init__(self, scores):
        self.scores = scores

    async def get_risk_scores(self, symbol, start, end):
        return [s for s in self.scores.get(symbol, []) if start <= s.time <= end]


class _GroundTruth:
    def __init__(self, events):
        self.events = events

    async def get_cascade_events(self, symbol, start, end):
        return [e for e in self.events.get(symbol, []) if start <= e.start_time <= end]


class TestLeadTime:
    def test_first_cascade_in_window(self):
        starts = [T0 + timedelta(minutes=30), T0 + timedelta(minutes=50)]
        assert cascade_lead_time(starts, T0, timedelta(minutes=60)) == timedelta(minutes=30)

    def test_window_is_inclusive(self):
        starts = [T0 + timedelta(minutes=60)]
        assert cascade_lead_time(starts, T0, timedelta(minutes=60)) == timedelta(minutes=60)

    def test_past_cascade_ignored(self):
        starts = [T0 - timedelta(minutes=1)]
        assert cascade_lead_time(starts, T0, timedelta(minutes=60)) is None


class TestEvaluate:
    def test_confusion_and_metrics(self):
        scores = [
            _Score(T0, 70),                                # TP (cascade at +30m)
            _Score(T0 + timedelta(hours=2), 65),           # FP
            _Score(T0 + timedelta(hours=4), 10),           # TN
            _Score(T0 + timedelta(hours=6), 30),           # FN (cascade at +6h10m)
        ]
        starts = [T0 + timedelta(minutes=30), T0 + timedelta(hours=6, minutes=10)]
        result = evaluate_backtest(scores, starts)

        assert result.confusion == ConfusionMatrix(tp=1, fp=1, tn=1, fn=1)
        assert result.precision == pytest.approx(0.5)
        assert result.recall == pytest.approx(0.5)
        assert result.f1_score == pytest.approx(0.5)
        assert result.false_positive_rate == pytest.approx(0.5)
        assert result.average_lead_time_minutes == pytest.approx(30.0)
        assert result.base_rate == pytest.approx(0.5)
        assert result.prediction_rate == pytest.approx(0.5)
        assert result.random_f1 == pytest.approx(0.5)
        assert result.naive_f1 == 0.0
        assert result.cascade_events == 2

    def test_confidence_threshold_applies(self):
        scores = [_Score(T0, 90, confidence=0.2)]
        starts = [T0 + timedelta(minutes=5)]
        result = evaluate_backtest(scores, starts, BacktestConfig(confidence_threshold=0.5))
        assert result.confusion.fn == 1
        assert result.confusion.tp == 0

    def test_empty_input_is_all_zero(self):
        result = evaluate_backtest([], [])
        assert result.confusion.total == 0
        assert result.precision == 0.0
        assert result.f1_score == 0.0

    def test_to_dict(self):
        result = evaluate_backtest([_Score(T0, 70)], [T0 + timedelta(minutes=10)])
        data = result.to_dict()
        assert data["confusion"] == {"tp": 1, "fp": 0, "tn": 0, "fn": 0}
        assert data["evaluation_points"] == 1
        assert data["baselines"]["naive_f1"] == 0.0


class TestCombine:
    def test_micro_average(self):
        a = evaluate_backtest([_Score(T0, 70)], [T0 + timedelta(minutes=10)])
        b = evaluate_backtest([_Score(T0, 70), _Score(T0, 10)], [T0 + timedelta(minutes=40)])
        combined = combine_results({"BTC": a, "ETH": b}, BacktestConfig())

        assert combined.confusion == ConfusionMatrix(tp=2, fp=0, tn=0, fn=1)
        assert combined.average_lead_time_minutes == pytest.approx(25.0)
        assert set(combined.per_symbol) == {"BTC", "ETH"}


class TestRunBacktest:
    @pytest.mark.asyncio
    async def test_reads_per_symbol_and_extends_window(self):
        end = T0 + timedelta(hours=1)
        reader = _Reader({"BTC": [_Score(end, 80)]})
        # Cascade after the score window but within the horizon still counts
        truth = _GroundTruth({"BTC": [_Event(end + timedelta(minutes=20))]})

        result = await run_backtest(reader, truth, ["BTC"], T0, end)

        assert result.confusion.tp == 1
        assert result.per_symbol["BTC"].average_lead_time_minutes == pytest.approx(20.0)
