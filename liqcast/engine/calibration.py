"""
Probability Calibration Engine.

Implements:
- One-dimensional logistic regression fit by IRLS (Newton-Raphson) with L2
- Calibrated point estimate P(cascade | risk_score)
- Wilson score interval on per-bin empirical counts
- Wald interval from the fit covariance

Model:
    P(cascade within horizon | score = s) = sigmoid(slope * s + intercept)

GOAL: When the system says "30% chance of a cascade", a cascade should follow
about 30% of the time. Probabilities are never exactly 0 or 1.
"""

import math
from collections import defaultdict
from dataclasses import dataclass
from statistics import NormalDist
from typing import Any, Iterable, Optional, Sequence

import structlog

from liqcast.errors import CalibrationFitFailure, CorruptCalibrationError

logger = structlog.get_logger(__name__)

# ── Configuration ─────────────────────────────────────────────────────────

PROBABILITY_EPSILON: float = 1e-6       # Output clamped to [eps, 1 - eps]
DEFAULT_REGULARIZATION: float = 0.001   # L2 penalty on (intercept, slope)
DEFAULT_MAX_ITERATIONS: int = 25
DEFAULT_CONVERGENCE: float = 1e-8
DEFAULT_BIN_EDGES: tuple[float, ...] = tuple(float(e) for e in range(0, 101, 10))


def sigmoid(z: float) -> float:
    """Numerically stable logistic function."""
    if z >= 0:
        return 1.0 / (1.0 + math.exp(-z))
    ez = math.exp(z)
    return ez / (1.0 + ez)


def logit(p: float) -> float:
    p = min(max(p, PROBABILITY_EPSILON), 1.0 - PROBABILITY_EPSILON)
    return math.log(p / (1.0 - p))


def z_for_confidence(confidence: float) -> float:
    """Two-sided normal quantile, e.g. 0.95 → 1.95996."""
    if not 0.0 < confidence < 1.0:
        raise ValueError(f"confidence must be in (0, 1), got {confidence}")
    return NormalDist().inv_cdf(0.5 + confidence / 2.0)


# ── Parameter types ───────────────────────────────────────────────────────


@dataclass(frozen=True)
class CalibrationBin:
    """Empirical outcome counts over a score range [lower, upper)."""
    lower: float
    upper: float
    successes: int
    trials: int
    closed_upper: bool = False   # Last bin also contains `upper`

    def contains(self, score: float) -> bool:
        if self.lower <= score < self.upper:
            return True
        return self.closed_upper and score == self.upper

    @property
    def rate(self) -> float:
        return self.successes / self.trials if self.trials else 0.0


@dataclass(frozen=True)
class CalibrationParams:
    """
    Immutable calibration parameter set.

    Replaced as a whole by CalibrationStore.publish(); never mutated.
    covariance is the packed upper triangle (Var(intercept), Cov, Var(slope)).
    """
    slope: float
    intercept: float
    bins: tuple[CalibrationBin, ...] = ()
    covariance: Optional[tuple[float, float, float]] = None
    version: str = "default"

    def to_dict(self) -> dict[str, Any]:
        return {
            "slope": self.slope,
            "intercept": self.intercept,
            "covariance": list(self.covariance) if self.covariance else None,
            "version": self.version,
            "bins": [
                {
                    "lower": b.lower,
                    "upper": b.upper,
                    "successes": b.successes,
                    "trials": b.trials,
                    "closed_upper": b.closed_upper,
                }
                for b in self.bins
            ],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CalibrationParams":
        covariance = data.get("covariance")
        return cls(
            slope=float(data["slope"]),
            intercept=float(data["intercept"]),
            bins=tuple(
                CalibrationBin(
                    lower=float(b["lower"]),
                    upper=float(b["upper"]),
                    successes=int(b["successes"]),
                    trials=int(b["trials"]),
                    closed_upper=bool(b.get("closed_upper", False)),
                )
                for b in data.get("bins") or ()
            ),
            covariance=tuple(float(c) for c in covariance) if covariance else None,
            version=str(data.get("version", "loaded")),
        )


# Cold-start mapping: sigmoid(0.1 * (score - 50)); P=0.5 at 50, ~0.7% at 0.
DEFAULT_CALIBRATION = CalibrationParams(slope=0.1, intercept=-5.0, version="default")


@dataclass(frozen=True)
class LogisticFit:
    """Result of fit_logistic_regression()."""
    params: CalibrationParams
    n_samples: int
    n_positive: int
    base_rate: float
    iterations: int
    log_likelihood: float
    converged: bool
    degenerate: bool = False     # All samples in one class; slope pinned at 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "slope": round(self.params.slope, 8),
            "intercept": round(self.params.intercept, 8),
            "n_samples": self.n_samples,
            "n_positive": self.n_positive,
            "base_rate": round(self.base_rate, 6),
            "iterations": self.iterations,
            "log_likelihood": round(self.log_likelihood, 6),
            "converged": self.converged,
            "degenerate": self.degenerate,
        }


@dataclass(frozen=True)
class CalibratedProbability:
    """Point estimate with a Wilson interval from the containing bin."""
    probability: float
    lower: float
    upper: float
    bin_sample_size: int = 0

    @property
    def width(self) -> float:
        return self.upper - self.lower


# ── Fitting ───────────────────────────────────────────────────────────────


def _group_samples(samples: Iterable[tuple[float, int]]) -> dict[float, list[int]]:
    """Collapse samples into {score: [positives, total]}."""
    grouped: dict[float, list[int]] = defaultdict(lambda: [0, 0])
    for score, outcome in samples:
        if outcome not in (0, 1):
            raise ValueError(f"outcome must be 0 or 1, got {outcome!r}")
        if not math.isfinite(score):
            raise ValueError(f"score must be finite, got {score!r}")
        counts = grouped[float(score)]
        counts[0] += int(outcome)
        counts[1] += 1
    return grouped


def fit_logistic_regression(
    samples: Iterable[tuple[float, int]],
    regularization: float = DEFAULT_REGULARIZATION,
    max_iterations: int = DEFAULT_MAX_ITERATIONS,
    convergence: float = DEFAULT_CONVERGENCE,
    version: str = "fitted",
) -> LogisticFit:
    """
    Fit P(y=1 | s) = sigmoid(intercept + slope * s) by IRLS.

    Per distinct score s with n observations and y positives:
        p = sigmoid(a + b*s), r = y - n*p, w = n*p*(1-p)
        g = [sum r, sum r*s], J = [[sum w, sum w*s], [sum w*s, sum w*s^2]]
        [a, b] += J^-1 g      (J += lambda*I, g -= lambda*[a, b])

    Covariance is J^-1 at the solution.

    Raises:
        CalibrationFitFailure: no samples at all.
    """
    grouped = _group_samples(samples)
    n_samples = sum(c[1] for c in grouped.values())
    n_positive = sum(c[0] for c in grouped.values())

    if n_samples == 0:
        raise CalibrationFitFailure("No samples to fit", n_samples=0, n_positive=0)

    base_rate = n_positive / n_samples

    if n_positive == 0 or n_positive == n_samples:
        # Perfect separation would send the MLE to infinity; pin a flat curve
        # at the smoothed base rate instead.
        smoothed = (n_positive + 0.5) / (n_samples + 1.0)
        intercept = logit(smoothed)
        logger.warning(
            "calibration_degenerate_sample",
            n_samples=n_samples,
            n_positive=n_positive,
            intercept=round(intercept, 4),
        )
        return LogisticFit(
            params=CalibrationParams(slope=0.0, intercept=intercept, version=version),
            n_samples=n_samples,
            n_positive=n_positive,
            base_rate=base_rate,
            iterations=0,
            log_likelihood=0.0,
            converged=False,
            degenerate=True,
        )

    a = logit(base_rate)
    b = 0.0
    iterations = 0
    converged = False
    log_lik = 0.0
    j00 = j01 = j11 = 0.0

    for iteration in range(max_iterations):
        iterations = iteration + 1
        g0 = g1 = 0.0
        j00 = j01 = j11 = 0.0
        log_lik = 0.0

        for s, (y, n) in grouped.items():
            p = sigmoid(a + b * s)
            p_safe = min(max(p, 1e-15), 1.0 - 1e-15)
            log_lik += y * math.log(p_safe) + (n - y) * math.log(1.0 - p_safe)

            r = y - n * p
            w = n * p * (1.0 - p)
            g0 += r
            g1 += r * s
            j00 += w
            j01 += w * s
            j11 += w * s * s

        log_lik -= (regularization / 2.0) * (a * a + b * b)
        g0 -= regularization * a
        g1 -= regularization * b
        j00 += regularization
        j11 += regularization

        det = j00 * j11 - j01 * j01
        if abs(det) < 1e-30:
            logger.warning("calibration_singular_information", iteration=iterations)
            break

        da = (j11 * g0 - j01 * g1) / det
        db = (-j01 * g0 + j00 * g1) / det
        a += da
        b += db

        if abs(da) < convergence and abs(db) < convergence:
            converged = True
            break

    det = j00 * j11 - j01 * j01
    covariance = None
    if abs(det) > 1e-30:
        covariance = (j11 / det, -j01 / det, j00 / det)

    fit = LogisticFit(
        params=CalibrationParams(slope=b, intercept=a, covariance=covariance, version=version),
        n_samples=n_samples,
        n_positive=n_positive,
        base_rate=base_rate,
        iterations=iterations,
        log_likelihood=log_lik,
        converged=converged,
    )
    logger.info("calibration_fitted", **fit.to_dict())
    return fit


def build_bins(
    samples: Iterable[tuple[float, int]],
    edges: Sequence[float] = DEFAULT_BIN_EDGES,
) -> tuple[CalibrationBin, ...]:
    """
    Count outcomes per score range.

    Bins are [edges[i], edges[i+1]); the last one is closed at its upper edge.
    Scores outside [edges[0], edges[-1]] are ignored.
    """
    if len(edges) < 2 or any(hi <= lo for lo, hi in zip(edges, edges[1:])):
        raise ValueError("edges must be strictly increasing with at least two values")

    last = len(edges) - 2
    counts = [[0, 0] for _ in range(last + 1)]
    for score, outcome in samples:
        for i in range(last + 1):
            lo, hi = edges[i], edges[i + 1]
            if lo <= score < hi or (i == last and score == hi):
                counts[i][0] += int(outcome)
                counts[i][1] += 1
                break

    return tuple(
        CalibrationBin(
            lower=float(edges[i]),
            upper=float(edges[i + 1]),
            successes=counts[i][0],
            trials=counts[i][1],
            closed_upper=(i == last),
        )
        for i in range(last + 1)
    )


def validate_params(params: CalibrationParams) -> CalibrationParams:
    """
    Reject parameters that must never reach the scoring engine.

    Raises:
        CorruptCalibrationError: non-finite slope/intercept/covariance, or
            bins that are unordered, overlapping, or have impossible counts.
    """
    if not (math.isfinite(params.slope) and math.isfinite(params.intercept)):
        raise CorruptCalibrationError(
            "Calibration slope/intercept must be finite",
            slope=params.slope,
            intercept=params.intercept,
        )
    if params.covariance is not None and not all(math.isfinite(c) for c in params.covariance):
        raise CorruptCalibrationError(
            "Calibration covariance must be finite",
            slope=params.slope,
            intercept=params.intercept,
        )

    previous_upper = -math.inf
    for b in params.bins:
        if b.upper <= b.lower or b.lower < previous_upper:
            raise CorruptCalibrationError(
                f"Calibration bins overlap or are unordered at [{b.lower}, {b.upper})",
                slope=params.slope,
                intercept=params.intercept,
            )
        if b.trials < 0 or not 0 <= b.successes <= b.trials:
            raise CorruptCalibrationError(
                f"Calibration bin [{b.lower}, {b.upper}) has invalid counts",
                slope=params.slope,
                intercept=params.intercept,
            )
        previous_upper = b.upper
    return params


# ── Inference ─────────────────────────────────────────────────────────────


def calibrate_probability(raw_score: float, params: CalibrationParams) -> float:
    """sigmoid(slope * raw_score + intercept), never exactly 0 or 1."""
    p = sigmoid(params.slope * raw_score + params.intercept)
    return min(max(p, PROBABILITY_EPSILON), 1.0 - PROBABILITY_EPSILON)


def wilson_interval(successes: int, trials: int, confidence: float = 0.95) -> tuple[float, float]:
    """
    Wilson score interval for a binomial proportion.

        center = (y + z^2/2) / (n + z^2)
        margin = z * sqrt(y*(n-y)/n + z^2/4) / (n + z^2)

    Returns (0, 1) when trials == 0. Bounds are clamped to [0, 1].
    """
    if trials < 0 or successes < 0 or successes > trials:
        raise ValueError(f"invalid counts: successes={successes}, trials={trials}")
    if trials == 0:
        return 0.0, 1.0

    z = z_for_confidence(confidence)
    z2 = z * z
    denom = trials + z2
    center = (successes + z2 / 2.0) / denom
    margin = z * math.sqrt(successes * (trials - successes) / trials + z2 / 4.0) / denom
    return max(0.0, center - margin), min(1.0, center + margin)


def find_bin(raw_score: float, bins: Sequence[CalibrationBin]) -> Optional[CalibrationBin]:
    for b in bins:
        if b.contains(raw_score):
            return b
    return None


def calibrate_with_interval(
    raw_score: float,
    params: CalibrationParams,
    bins: Optional[Sequence[CalibrationBin]] = None,
    confidence: float = 0.95,
) -> CalibratedProbability:
    """
    Logistic point estimate plus the Wilson interval of the containing bin.

    bins defaults to params.bins. With no containing bin the interval is
    the uninformative (0, 1) with sample size 0.
    """
    probability = calibrate_probability(raw_score, params)
    containing = find_bin(raw_score, params.bins if bins is None else bins)
    if containing is None:
        return CalibratedProbability(probability=probability, lower=0.0, upper=1.0, bin_sample_size=0)

    lower, upper = wilson_interval(containing.successes, containing.trials, confidence)
    return CalibratedProbability(
        probability=probability,
        lower=lower,
        upper=upper,
        bin_sample_size=containing.trials,
    )


def wald_interval(raw_score: float, params: CalibrationParams, z: float = 1.96) -> tuple[float, float]:
    """
    Model-based interval on the log-odds scale, mapped through sigmoid.

        Var(a + b*s) = Var(a) + 2*s*Cov(a,b) + s^2*Var(b)

    Without covariance (e.g. DEFAULT_CALIBRATION) the interval is degenerate.
    """
    linear = params.slope * raw_score + params.intercept
    if params.covariance is None:
        p = calibrate_probability(raw_score, params)
        return p, p

    var_a, cov_ab, var_b = params.covariance
    variance = var_a + 2.0 * raw_score * cov_ab + raw_score * raw_score * var_b
    se = math.sqrt(max(0.0, variance))

    def _clamp(p: float) -> float:
        return min(max(p, PROBABILITY_EPSILON), 1.0 - PROBABILITY_EPSILON)

    return _clamp(sigmoid(linear - z * se)), _clamp(sigmoid(linear + z * se))
