"""
Exchange Metric Validator — the validation gate for live poll cycles.

Validates every raw record BEFORE it reaches aggregation:
1. Numeric fields are finite
2. Mark price within ±5% of index price
3. Funding rate within ±5%
4. Open interest non-negative
5. Timestamp no older than 15s

A failing record is dropped, logged, and published as one AnomalyEvent. A
record of an unknown type is rejected the same way. Nothing in this module
raises on bad data.
"""

import math
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

import structlog

from liqcast.config import settings
from liqcast.pipeline.channels import EventChannel
from liqcast.schemas.anomaly import AnomalyEvent, ValidationRule
from liqcast.schemas.market import ExchangeData, FundingRate, MarkPrice, OpenInterest, RawMetric

logger = structlog.get_logger(__name__)


def now_ms() -> float:
    return time.time() * 1000.0


@dataclass(frozen=True)
class ValidationConfig:
    """Thresholds for both the live and the historical validation paths."""
    max_price_deviation: float = 0.05      # |mark - index| / index
    max_funding_rate: float = 0.05         # |funding|
    max_staleness_ms: float = 15_000       # live path
    max_future_offset_ms: float = 300_000  # historical path clock-skew tolerance
    max_mark_price_jump: float = 0.20      # historical path, vs last accepted

    @classmethod
    def from_settings(cls) -> "ValidationConfig":
        return cls(
            max_price_deviation=settings.max_price_deviation,
            max_funding_rate=settings.max_funding_rate,
            max_staleness_ms=settings.max_staleness_ms,
            max_future_offset_ms=settings.max_future_offset_ms,
            max_mark_price_jump=settings.max_mark_price_jump,
        )


class ValidationOutcome:
    """Accepted, or rejected with the rule that failed."""

    def __init__(
        self,
        accepted: bool,
        rule: Optional[ValidationRule] = None,
        field: str = "",
        value: Any = None,
        reason: str = "",
    ):
        self.accepted = accepted
        self.rule = rule
        self.field = field
        self.value = value
        self.reason = reason

    @classmethod
    def ok(cls) -> "ValidationOutcome":
        return cls(accepted=True)

    @classmethod
    def reject(cls, rule: ValidationRule, field: str, value: Any, reason: str) -> "ValidationOutcome":
        return cls(accepted=False, rule=rule, field=field, value=value, reason=reason)

    def to_dict(self) -> dict:
        return {
            "accepted": self.accepted,
            "rule": self.rule.value if self.rule else None,
            "field": self.field,
            "reason": self.reason,
        }


# ── Rule checks (shared with the historical path) ─────────────────────────


def check_finite(field: str, value: Any) -> Optional[ValidationOutcome]:
    if value is None or isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        return ValidationOutcome.reject(
            ValidationRule.NOT_FINITE, field, value,
            f"Value is not a finite number: {value}",
        )
    return None


def check_mark_index_deviation(
    mark_price: float, index_price: float, max_deviation: float,
) -> Optional[ValidationOutcome]:
    # Only meaningful when both prices are positive; a zero index is skipped.
    if mark_price <= 0 or index_price <= 0:
        return None
    deviation = abs(mark_price - index_price) / index_price
    if deviation > max_deviation:
        return ValidationOutcome.reject(
            ValidationRule.MARK_INDEX_DEVIATION, "mark_price", mark_price,
            f"Deviation {deviation * 100:.2f}% exceeds {max_deviation * 100:.0f}% "
            f"(mark={mark_price}, index={index_price})",
        )
    return None


def check_funding_range(funding_rate: float, max_funding_rate: float) -> Optional[ValidationOutcome]:
    if abs(funding_rate) > max_funding_rate:
        return ValidationOutcome.reject(
            ValidationRule.FUNDING_OUT_OF_RANGE, "funding_rate", funding_rate,
            f"|{funding_rate}| > {max_funding_rate} ({max_funding_rate * 100:.0f}%)",
        )
    return None


def check_non_negative(field: str, value: float) -> Optional[ValidationOutcome]:
    if value < 0:
        return ValidationOutcome.reject(
            ValidationRule.NEGATIVE_OPEN_INTEREST, field, value,
            f"{field} is negative: {value}",
        )
    return None


def check_timestamp_finite(field: str, timestamp: Any) -> Optional[ValidationOutcome]:
    if check_finite(field, timestamp) is not None:
        return ValidationOutcome.reject(
            ValidationRule.INVALID_TIMESTAMP, field, timestamp, "Timestamp is not finite",
        )
    return None


class MetricValidator:
    """
    Live-path validation gate.

    Owns the anomaly channel; subscribe to it to observe rejections.
    """

    def __init__(
        self,
        config: Optional[ValidationConfig] = None,
        anomalies: Optional[EventChannel[AnomalyEvent]] = None,
        clock: Callable[[], float] = now_ms,
    ):
        self.config = config or ValidationConfig.from_settings()
        self.anomalies: EventChannel[AnomalyEvent] = anomalies or EventChannel("anomalies")
        self._clock = clock

    # ── Single record ─────────────────────────────────────────────────

    def validate(self, record: RawMetric, now: Optional[float] = None) -> ValidationOutcome:
        """
        Validate one raw record.

        Returns a ValidationOutcome; a rejection is also logged and published.
        """
        now = self._clock() if now is None else now

        if isinstance(record, OpenInterest):
            outcome = self._check_open_interest(record, now)
        elif isinstance(record, FundingRate):
            outcome = self._check_funding(record, now)
        elif isinstance(record, MarkPrice):
            outcome = self._check_mark_price(record, now)
        else:
            kind = type(record).__name__
            outcome = ValidationOutcome.reject(
                ValidationRule.UNSUPPORTED_RECORD, "record", kind, f"Unsupported metric record: {kind}",
            )

        if not outcome.accepted:
            self._report(
                str(getattr(record, "exchange", "unknown")),
                str(getattr(record, "symbol", "unknown")),
                outcome,
                now,
            )
        return outcome

    # ── Bundles ───────────────────────────────────────────────────────

    def validate_exchange_data(self, data: ExchangeData, now: Optional[float] = None) -> ExchangeData:
        """Return a cleaned copy of one exchange's bundle with rejected records removed."""
        now = self._clock() if now is None else now
        return ExchangeData(
            exchange=data.exchange,
            open_interest=[r for r in data.open_interest if self.validate(r, now).accepted],
            funding_rates=[r for r in data.funding_rates if self.validate(r, now).accepted],
            mark_prices=[r for r in data.mark_prices if self.validate(r, now).accepted],
            timestamp=data.timestamp,
        )

    def validate_batch(self, bundles: list[ExchangeData], now: Optional[float] = None) -> list[ExchangeData]:
        """
        Validate a cycle's worth of bundles.

        An exchange whose three metric lists all empty out is dropped entirely
        rather than forwarded as an empty-but-present entry.
        """
        now = self._clock() if now is None else now
        validated: list[ExchangeData] = []

        for data in bundles:
            clean = self.validate_exchange_data(data, now)
            if clean.is_empty:
                logger.warning(
                    "exchange_excluded_all_data_invalid",
                    exchange=data.exchange,
                    original_oi=len(data.open_interest),
                    original_fr=len(data.funding_rates),
                    original_mp=len(data.mark_prices),
                )
                continue
            validated.append(clean)

        return validated

    # ── Per-kind checks ───────────────────────────────────────────────

    def _check_open_interest(self, oi: OpenInterest, now: float) -> ValidationOutcome:
        return (
            check_finite("open_interest", oi.open_interest)
            or check_finite("open_interest_value", oi.open_interest_value)
            or check_non_negative("open_interest", oi.open_interest)
            or check_non_negative("open_interest_value", oi.open_interest_value)
            or self._check_fresh("open_interest.timestamp", oi.timestamp, now)
            or ValidationOutcome.ok()
        )

    def _check_funding(self, fr: FundingRate, now: float) -> ValidationOutcome:
        return (
            check_finite("funding_rate", fr.funding_rate)
            or check_funding_range(fr.funding_rate, self.config.max_funding_rate)
            or self._check_fresh("funding_rate.timestamp", fr.timestamp, now)
            or ValidationOutcome.ok()
        )

    def _check_mark_price(self, mp: MarkPrice, now: float) -> ValidationOutcome:
        return (
            check_finite("mark_price", mp.mark_price)
            or check_finite("index_price", mp.index_price)
            or check_mark_index_deviation(mp.mark_price, mp.index_price, self.config.max_price_deviation)
            or self._check_fresh("mark_price.timestamp", mp.timestamp, now)
            or ValidationOutcome.ok()
        )

    def _check_fresh(self, field: str, timestamp: float, now: float) -> Optional[ValidationOutcome]:
        invalid = check_timestamp_finite(field, timestamp)
        if invalid is not None:
            return invalid
        age = now - timestamp
        if age > self.config.max_staleness_ms:
            return ValidationOutcome.reject(
                ValidationRule.STALE_DATA, field, timestamp,
                f"Data is {age / 1000:.1f}s old (max: {self.config.max_staleness_ms / 1000:.0f}s)",
            )
        return None

    # ── Anomaly reporting ─────────────────────────────────────────────

    def _report(self, exchange: str, symbol: str, outcome: ValidationOutcome, now: float) -> None:
        event = AnomalyEvent(
            exchange=exchange,
            symbol=symbol,
            field=outcome.field,
            value=outcome.value,
            rule=outcome.rule,
            detail=outcome.reason,
            timestamp=now,
        )
        logger.warning(
            "metric_rejected",
            exchange=exchange,
            symbol=symbol,
            field=outcome.field,
            rule=outcome.rule.value,
            detail=outcome.reason,
        )
        self.anomalies.publish(event)
