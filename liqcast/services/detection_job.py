"""
Cascade Detection Job.

Scans stored mark prices and liquidation prints over a trailing window,
runs the detector per symbol, and writes the resulting CascadeEvents to the
ground-truth repository. Rows go through the historical validation gate
first, so a corrupt print cannot fabricate a cascade.

The window must cover the detector's volatility lookback plus the span to
scan; events found on an earlier run are found again and skipped by the
repository's natural key. A failing source or writer is reported for that
symbol and the run continues with the next one.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Sequence

import structlog

from liqcast.config import settings
from liqcast.engine.detector import DetectorConfig, detect_cascades
from liqcast.errors import CollaboratorFailure
from liqcast.pipeline.historical import HistoricalValidator
from liqcast.schemas.risk import CascadeEvent
from liqcast.services.interfaces import CascadeEventWriter, HistorySource

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class DetectionReport:
    """Outcome of one detection run."""
    window_start: datetime
    window_end: datetime
    symbols: tuple[str, ...]
    detected: int = 0
    inserted: int = 0
    per_symbol_events: dict[str, int] = field(default_factory=dict)
    failed_symbols: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "window_start": self.window_start.isoformat(),
            "window_end": self.window_end.isoformat(),
            "symbols": list(self.symbols),
            "detected": self.detected,
            "inserted": self.inserted,
            "per_symbol_events": dict(self.per_symbol_events),
            "failed_symbols": list(self.failed_symbols),
        }


class CascadeDetectionJob:
    """Scheduled wrapper around detect_cascades."""

    def __init__(
        self,
        source: HistorySource,
        repository: CascadeEventWriter,
        symbols: Optional[Sequence[str]] = None,
        validator: Optional[HistoricalValidator] = None,
        config: Optional[DetectorConfig] = None,
        lookback: Optional[timedelta] = None,
    ):
        self.source = source
        self.repository = repository
        self.symbols = list(symbols if symbols is not None else settings.symbols)
        self.validator = validator or HistoricalValidator(source="detection")
        self.config = config or DetectorConfig.from_settings()
        self.lookback = lookback or timedelta(hours=settings.detection_lookback_hours)
        self.last_report: Optional[DetectionReport] = None

    async def run(self, now: Optional[datetime] = None) -> DetectionReport:
        end = now or datetime.now(timezone.utc)
        start = end - self.lookback

        detected = 0
        inserted = 0
        per_symbol: dict[str, int] = {}
        failed: list[str] = []

        for symbol in self.symbols:
            try:
                events = await self._detect_symbol(symbol, start, end)
                if events:
                    inserted += await self.repository.insert_cascade_events(events)
            except Exception as e:
                error = CollaboratorFailure(
                    f"Cascade detection for {symbol} failed: {e}", collaborator="history_source", cause=e,
                )
                logger.error("cascade_detection_failed", symbol=symbol, **error.to_dict())
                failed.append(symbol)
                continue
            per_symbol[symbol] = len(events)
            detected += len(events)

        report = DetectionReport(
            window_start=start,
            window_end=end,
            symbols=tuple(self.symbols),
            detected=detected,
            inserted=inserted,
            per_symbol_events=per_symbol,
            failed_symbols=tuple(failed),
        )
        self.last_report = report
        logger.info("cascade_detection_finished", **report.to_dict())
        return report

    async def _detect_symbol(self, symbol: str, start: datetime, end: datetime) -> list[CascadeEvent]:
        prices = await self.source.get_mark_prices(symbol, start, end)
        liquidations = await self.source.get_liquidations(symbol, start, end)
        prices = self.validator.validate_mark_price_batch(prices)
        liquidations = self.validator.validate_liquidation_batch(liquidations)
        return detect_cascades(symbol, prices, liquidations, self.config)
