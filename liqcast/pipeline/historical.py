"""
Historical Data Validator — pre-insert validation for backfill rows.

Rules:
- Mark price: finite-positive; reject >20% jump vs the last ACCEPTED price
  of the same symbol (rows are sorted by time first)
- Open interest: finite, non-negative
- Funding rate: finite, within [-5%, +5%]
- Liquidations: price, quantity, usd_value > 0 and side in {BUY, SELL}
- Timestamps: reject more than 5 minutes in the future (clock skew)

Never raises on bad data: each rejected row is logged and published as an
AnomalyEvent, and the batch functions return only the accepted rows.
"""

from typing import Callable, Optional

import structlog

from liqcast.pipeline.channels import EventChannel
from liqcast.pipeline.validator import (
    ValidationConfig,
    ValidationOutcome,
    check_finite,
    check_funding_range,
    check_non_negative,
    check_timestamp_finite,
    now_ms,
)
from liqcast.schemas.anomaly import AnomalyEvent, ValidationRule
from liqcast.schemas.market import (
    FundingRatePoint,
    Liquidation,
    MarkPricePoint,
    OpenInterestPoint,
)

logger = structlog.get_logger(__name__)

VALID_LIQUIDATION_SIDES: frozenset[str] = frozenset({"BUY", "SELL"})


def _check_positive(field: str, value: float, rule: ValidationRule) -> Optional[ValidationOutcome]:
    finite = check_finite(field, value)
    if finite is not None:
        return finite
    if value <= 0:
        return ValidationOutcome.reject(rule, field, value, f"{field} not positive: {value}")
    return None


class HistoricalValidator:
    """Validation gate for the batch / backfill path."""

    def __init__(
        self,
        config: Optional[ValidationConfig] = None,
        anomalies: Optional[EventChannel[AnomalyEvent]] = None,
        clock: Callable[[], float] = now_ms,
        source: str = "historical",
    ):
        self.config = config or ValidationConfig.from_settings()
        self.anomalies: EventChannel[AnomalyEvent] = anomalies or EventChannel("historical_anomalies")
        self._clock = clock
        self.source = source

    # ── Single-row checks ─────────────────────────────────────────────

    def validate_mark_price(
        self,
        mark_price: float,
        timestamp: float,
        prev_mark_price: Optional[float],
        now: Optional[float] = None,
    ) -> ValidationOutcome:
        now = self._clock() if now is None else now
        outcome = (
            _check_positive("mark_price", mark_price, ValidationRule.NON_POSITIVE_PRICE)
            or self._check_not_future("timestamp", timestamp, now)
        )
        if outcome is not None:
            return outcome

        if prev_mark_price is not None and prev_mark_price > 0:
            change = abs(mark_price - prev_mark_price) / prev_mark_price
            if change > self.config.max_mark_price_jump:
                return ValidationOutcome.reject(
                    ValidationRule.PRICE_JUMP, "mark_price", mark_price,
                    f"mark_price jump {change * 100:.2f}% exceeds "
                    f"{self.config.max_mark_price_jump * 100:.0f}% threshold "
                    f"({prev_mark_price} -> {mark_price})",
                )
        return ValidationOutcome.ok()

    def validate_funding_rate(
        self, funding_rate: float, funding_time: float, now: Optional[float] = None,
    ) -> ValidationOutcome:
        now = self._clock() if now is None else now
        return (
            check_finite("funding_rate", funding_rate)
            or check_funding_range(funding_rate, self.config.max_funding_rate)
            or self._check_not_future("funding_time", funding_time, now)
            or ValidationOutcome.ok()
        )

    def validate_open_interest(
        self, open_interest_usd: float, timestamp: float, now: Optional[float] = None,
    ) -> ValidationOutcome:
        now = self._clock() if now is None else now
        return (
            check_finite("open_interest_usd", open_interest_usd)
            or check_non_negative("open_interest_usd", open_interest_usd)
            or self._check_not_future("timestamp", timestamp, now)
            or ValidationOutcome.ok()
        )

    def validate_liquidation(self, liq: Liquidation, now: Optional[float] = None) -> ValidationOutcome:
        now = self._clock() if now is None else now
        outcome = (
            _check_positive("price", liq.price, ValidationRule.INVALID_LIQUIDATION)
            or _check_positive("quantity", liq.quantity, ValidationRule.INVALID_LIQUIDATION)
            or _check_positive("usd_value", liq.usd_value, ValidationRule.INVALID_LIQUIDATION)
        )
        if outcome is None and liq.side not in VALID_LIQUIDATION_SIDES:
            outcome = ValidationOutcome.reject(
                ValidationRule.INVALID_LIQUIDATION, "side", liq.side,
                f"liquidation side invalid: {liq.side}",
            )
        outcome = outcome or self._check_not_future("timestamp", liq.timestamp, now) or ValidationOutcome.ok()
        if not outcome.accepted:
            self._report(liq.symbol, outcome, now, exchange=liq.exchange)
        return outcome

    # ── Batches ───────────────────────────────────────────────────────

    def validate_mark_price_batch(self, rows: list[MarkPricePoint]) -> list[MarkPricePoint]:
        """
        Filter mark price rows with the sequential jump check.

        Rows are sorted by time; each symbol is compared with its own last
        accepted price. A rejected row never becomes the reference.
        """
        now = self._clock()
        accepted: list[MarkPricePoint] = []
        last_accepted: dict[str, float] = {}

        for row in sorted(rows, key=lambda r: r.timestamp):
            outcome = self.validate_mark_price(
                row.mark_price, row.timestamp, last_accepted.get(row.symbol), now,
            )
            if outcome.accepted:
                accepted.append(row)
                last_accepted[row.symbol] = row.mark_price
            else:
                self._report(row.symbol, outcome, now)

        self._log_batch("mark_price", len(rows), len(accepted))
        return accepted

    def validate_funding_rate_batch(self, rows: list[FundingRatePoint]) -> list[FundingRatePoint]:
        now = self._clock()
        accepted: list[FundingRatePoint] = []
        for row in rows:
            outcome = self.validate_funding_rate(row.funding_rate, row.funding_time, now)
            if outcome.accepted:
                accepted.append(row)
            else:
                self._report(row.symbol, outcome, now)

        self._log_batch("funding_rate", len(rows), len(accepted))
        return accepted

    def validate_open_interest_batch(self, rows: list[OpenInterestPoint]) -> list[OpenInterestPoint]:
        now = self._clock()
        accepted: list[OpenInterestPoint] = []
        for row in rows:
            outcome = self.validate_open_interest(row.open_interest_usd, row.timestamp, now)
            if outcome.accepted:
                accepted.append(row)
            else:
                self._report(row.symbol, outcome, now)

        self._log_batch("open_interest", len(rows), len(accepted))
        return accepted

    def validate_liquidation_batch(self, rows: list[Liquidation]) -> list[Liquidation]:
        now = self._clock()
        accepted = [row for row in rows if self.validate_liquidation(row, now).accepted]
        self._log_batch("liquidation", len(rows), len(accepted))
        return accepted

    # ── Helpers ───────────────────────────────────────────────────────

    def _check_not_future(self, field: str, timestamp: float, now: float) -> Optional[ValidationOutcome]:
        invalid = check_timestamp_finite(field, timestamp)
        if invalid is not None:
            return invalid
        if timestamp > now + self.config.max_future_offset_ms:
            return ValidationOutcome.reject(
                ValidationRule.FUTURE_TIMESTAMP, field, timestamp,
                f"{field} in future by {(timestamp - now) / 1000:.0f}s",
            )
        return None

    def _report(
        self, symbol: str, outcome: ValidationOutcome, now: float, exchange: Optional[str] = None,
    ) -> None:
        exchange = exchange or self.source
        logger.warning(
            "historical_row_rejected",
            exchange=exchange,
            symbol=symbol,
            field=outcome.field,
            rule=outcome.rule.value,
            detail=outcome.reason,
        )
        self.anomalies.publish(AnomalyEvent(
            exchange=exchange,
            symbol=symbol,
            field=outcome.field,
            value=outcome.value,
            rule=outcome.rule,
            detail=outcome.reason,
            timestamp=now,
        ))

    def _log_batch(self, kind: str, total: int, valid: int) -> None:
        if valid < total:
            logger.info(
                "historical_batch_validated",
                kind=kind,
                total=total,
                valid=valid,
                rejected=total - valid,
            )
