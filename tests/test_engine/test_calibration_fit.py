"""
Probability Calibration Tests.

Covers:
- Logistic regression fit (IRLS) recovers a known curve
- Degenerate (one-class) samples stay finite
- Wilson interval reference values
- Bins, interval lookup, Wald interval
- Parameter validation
"""

import math
import random

import pytest

from liqcast.engine.calibration import (
    DEFAULT_CALIBRATION,
    PROBABILITY_EPSILON,
    CalibrationBin,
    CalibrationParams,
    build_bins,
    calibrate_probability,
    calibrate_with_interval,
    fit_logistic_regression,
    sigmoid,
    validate_params,
    wald_interval,
    wilson_interval,
    z_for_confidence,
)
from liqcast.errors import CalibrationFitFailure, CorruptCalibrationError


def _synthetic_samples(slope: float, intercept: float, n: int = 4000, seed: int = 7):
    rng = random.Random(seed)
    samples = []
    for _ in range(n):
        s = rng.uniform(0, 100)
        samples.append((s, 1 if rng.random() < sigmoid(slope * s + intercept) else 0))
    return samples


class TestLogisticFit:
    def test_recovers_known_curve(self):
        fit = fit_logistic_regression(_synthetic_samples(0.08, -4.0))
        assert fit.converged
        assert fit.params.slope == pytest.approx(0.08, abs=0.02)
        assert fit.params.intercept == pytest.approx(-4.0, abs=0.6)
        assert not fit.degenerate

    def test_reports_counts(self):
        samples = [(10.0, 0), (20.0, 0), (30.0, 1), (70.0, 0), (80.0, 1), (90.0, 1)]
        fit = fit_logistic_regression(samples)
        assert fit.n_samples == 6
        assert fit.n_positive == 3
        assert fit.base_rate == pytest.approx(0.5)
        assert fit.params.slope > 0

    def test_covariance_present_and_finite(self):
        fit = fit_logistic_regression(_synthetic_samples(0.05, -3.0, n=500))
        assert fit.params.covariance is not None
        assert all(math.isfinite(c) for c in fit.params.covariance)
        assert fit.params.covariance[0] > 0
        assert fit.params.covariance[2] > 0

    def test_all_negative_is_degenerate_not_divergent(self):
        fit = fit_logistic_regression([(s, 0) for s in range(0, 100, 5)])
        assert fit.degenerate
        assert fit.params.slope == 0.0
        assert math.isfinite(fit.params.intercept)
        assert calibrate_probability(50, fit.params) < 0.1

    def test_all_positive_is_degenerate_not_divergent(self):
        fit = fit_logistic_regression([(s, 1) for s in range(0, 100, 5)])
        assert fit.degenerate
        assert math.isfinite(fit.params.intercept)
        assert calibrate_probability(50, fit.params) > 0.9

    def test_empty_raises(self):
        with pytest.raises(CalibrationFitFailure):
            fit_logistic_regression([])

    def test_bad_outcome_rejected(self):
        with pytest.raises(ValueError):
            fit_logistic_regression([(10.0, 2)])

    def test_fit_is_deterministic(self):
        samples = _synthetic_samples(0.06, -3.5, n=300)
        assert fit_logistic_regression(samples) == fit_logistic_regression(samples)


class TestCalibrateProbability:
    def test_default_midpoint(self):
        assert calibrate_probability(50, DEFAULT_CALIBRATION) == pytest.approx(0.5)

    def test_never_zero_or_one(self):
        extreme = CalibrationParams(slope=10.0, intercept=0.0)
        assert calibrate_probability(100, extreme) == 1.0 - PROBABILITY_EPSILON
        assert calibrate_probability(-100, extreme) == PROBABILITY_EPSILON

    def test_monotone_with_positive_slope(self):
        probs = [calibrate_probability(s, DEFAULT_CALIBRATION) for s in range(0, 101)]
        assert probs == sorted(probs)


class TestWilsonInterval:
    def test_half_successes(self):
        lower, upper = wilson_interval(50, 100, 0.95)
        assert lower == pytest.approx(0.404, abs=1e-3)
        assert upper == pytest.approx(0.596, abs=1e-3)

    def test_zero_successes_never_negative(self):
        lower, upper = wilson_interval(0, 10, 0.95)
        assert lower == pytest.approx(0.0, abs=1e-9)
        assert lower >= 0.0
        assert upper == pytest.approx(0.278, abs=1e-3)

    def test_all_successes_never_above_one(self):
        lower, upper = wilson_interval(10, 10, 0.95)
        assert upper <= 1.0
        assert lower == pytest.approx(0.722, abs=1e-3)

    def test_zero_trials_is_max_uncertainty(self):
        assert wilson_interval(0, 0) == (0.0, 1.0)

    def test_more_trials_narrower(self):
        few = wilson_interval(5, 10)
        many = wilson_interval(500, 1000)
        assert (many[1] - many[0]) < (few[1] - few[0])

    def test_invalid_counts(self):
        with pytest.raises(ValueError):
            wilson_interval(11, 10)
        with pytest.raises(ValueError):
            wilson_interval(-1, 10)

    def test_z_for_confidence(self):
        assert z_for_confidence(0.95) == pytest.approx(1.96, abs=1e-3)
        with pytest.raises(ValueError):
            z_for_confidence(1.0)


class TestBins:
    def test_default_edges_make_ten_bins(self):
        bins = build_bins([(0.0, 0), (9.99, 1), (10.0, 1), (100.0, 1)])
        assert len(bins) == 10
        assert (bins[0].successes, bins[0].trials) == (1, 2)
        assert (bins[1].successes, bins[1].trials) == (1, 1)
        assert bins[-1].closed_upper
        assert (bins[-1].successes, bins[-1].trials) == (1, 1)

    def test_out_of_range_scores_ignored(self):
        bins = build_bins([(150.0, 1), (-5.0, 0)])
        assert sum(b.trials for b in bins) == 0

    def test_bad_edges(self):
        with pytest.raises(ValueError):
            build_bins([], edges=[0.0, 0.0])

    def test_contains_half_open(self):
        b = CalibrationBin(lower=10.0, upper=20.0, successes=0, trials=0)
        assert b.contains(10.0)
        assert not b.contains(20.0)


class TestCalibrateWithInterval:
    def test_uses_containing_bin(self):
        bins = build_bins([(45.0, 1)] * 50 + [(45.0, 0)] * 50)
        params = CalibrationParams(slope=0.1, intercept=-5.0, bins=bins)
        result = calibrate_with_interval(45.0, params)

        assert result.probability == pytest.approx(calibrate_probability(45.0, params))
        assert result.lower == pytest.approx(0.404, abs=1e-3)
        assert result.upper == pytest.approx(0.596, abs=1e-3)
        assert result.bin_sample_size == 100

    def test_no_bins_is_uninformative(self):
        result = calibrate_with_interval(45.0, DEFAULT_CALIBRATION)
        assert (result.lower, result.upper, result.bin_sample_size) == (0.0, 1.0, 0)
        assert result.width == 1.0

    def test_explicit_bins_override(self):
        bins = (CalibrationBin(lower=0.0, upper=100.0, successes=0, trials=10, closed_upper=True),)
        result = calibrate_with_interval(30.0, DEFAULT_CALIBRATION, bins=bins)
        assert result.bin_sample_size == 10


class TestWaldInterval:
    def test_degenerate_without_covariance(self):
        lower, upper = wald_interval(50, DEFAULT_CALIBRATION)
        assert lower == upper == pytest.approx(0.5)

    def test_brackets_point_estimate(self):
        fit = fit_logistic_regression(_synthetic_samples(0.05, -3.0, n=500))
        p = calibrate_probability(60, fit.params)
        lower, upper = wald_interval(60, fit.params)
        assert lower < p < upper


class TestValidateParams:
    @pytest.mark.parametrize("slope,intercept", [
        (math.nan, 0.0), (0.1, math.inf), (-math.inf, -5.0),
    ])
    def test_non_finite_rejected(self, slope, intercept):
        with pytest.raises(CorruptCalibrationError):
            validate_params(CalibrationParams(slope=slope, intercept=intercept))

    def test_overlapping_bins_rejected(self):
        bins = (
            CalibrationBin(lower=0.0, upper=20.0, successes=0, trials=1),
            CalibrationBin(lower=10.0, upper=30.0, successes=0, trials=1),
        )
        with pytest.raises(CorruptCalibrationError):
            validate_params(CalibrationParams(slope=0.1, intercept=-5.0, bins=bins))

    def test_impossible_counts_rejected(self):
        bins = (CalibrationBin(lower=0.0, upper=10.0, successes=5, trials=2),)
        with pytest.raises(CorruptCalibrationError):
            validate_params(CalibrationParams(slope=0.1, intercept=-5.0, bins=bins))

    def test_round_trip_dict(self):
        params = CalibrationParams(
            slope=0.07, intercept=-4.2, covariance=(0.1, -0.001, 0.00002),
            bins=build_bins([(15.0, 1), (15.0, 0)]), version="v1",
        )
        assert CalibrationParams.from_dict(params.to_dict()) == params
