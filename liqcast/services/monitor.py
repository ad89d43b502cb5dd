"""
Cascade Monitor — one poll cycle, end to end.

    fetch (concurrent) → validate → aggregate → score (worker pool)
        → publish on the risk channel → persist

Validation strictly precedes aggregation, which strictly precedes scoring;
there is no path around the gate.

Error isolation:
- One exchange failing drops that exchange for the cycle, nothing more
- One symbol failing to score drops that symbol for the cycle
- Anything else is caught at the cycle boundary, logged, and published on
  the error channel; the next cycle runs on schedule
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

import structlog

from liqcast.engine.calibration import CalibrationParams
from liqcast.engine.scoring import CascadeScoringEngine
from liqcast.errors import CollaboratorFailure, ErrorCode, LiqCastError
from liqcast.pipeline.aggregator import CrossExchangeAggregator
from liqcast.pipeline.channels import EventChannel
from liqcast.pipeline.validator import MetricValidator, now_ms
from liqcast.schemas.anomaly import AnomalyEvent
from liqcast.schemas.market import ExchangeData
from liqcast.schemas.risk import CascadeRisk
from liqcast.schemas.snapshot import AggregatedSnapshot
from liqcast.services.interfaces import Aggregator, ExchangeAdapter, RiskScoreWriter

logger = structlog.get_logger(__name__)


@dataclass
class CycleResult:
    """What one cycle did; returned to the caller and kept as last_cycle."""
    timestamp: float
    exchanges_ok: list[str] = field(default_factory=list)
    exchanges_failed: list[str] = field(default_factory=list)
    exchanges_validated: list[str] = field(default_factory=list)
    risks: list[CascadeRisk] = field(default_factory=list)
    skipped_symbols: list[str] = field(default_factory=list)
    persisted: int = 0
    error: Optional[LiqCastError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class CascadeMonitor:
    """Runs cycles; owns the risk and error channels."""

    def __init__(
        self,
        adapters: Sequence[ExchangeAdapter],
        symbols: list[str],
        validator: Optional[MetricValidator] = None,
        aggregator: Optional[Aggregator] = None,
        engine: Optional[CascadeScoringEngine] = None,
        risk_writer: Optional[RiskScoreWriter] = None,
        scoring_workers: int = 4,
        clock: Callable[[], float] = now_ms,
    ):
        if scoring_workers < 1:
            raise ValueError("scoring_workers must be >= 1")
        self.adapters = list(adapters)
        self.symbols = list(symbols)
        self.validator = validator or MetricValidator()
        self.aggregator = aggregator or CrossExchangeAggregator()
        self.engine = engine or CascadeScoringEngine()
        self.risk_writer = risk_writer
        self._clock = clock
        self._executor = ThreadPoolExecutor(max_workers=scoring_workers, thread_name_prefix="liqcast-score")

        self.risks: EventChannel[CascadeRisk] = EventChannel("risks")
        self.errors: EventChannel[LiqCastError] = EventChannel("cycle_errors")
        self.last_cycle: Optional[CycleResult] = None

    @property
    def anomalies(self) -> EventChannel[AnomalyEvent]:
        return self.validator.anomalies

    @property
    def last_risks(self) -> list[CascadeRisk]:
        return list(self.last_cycle.risks) if self.last_cycle else []

    async def run_cycle(self) -> CycleResult:
        """Run one cycle. Never raises for collaborator or data failures."""
        result = CycleResult(timestamp=self._clock())
        log = logger.bind(cycle_ts=result.timestamp)

        try:
            raw = await self._fetch_all(result)
            validated = self.validator.validate_batch(raw, now=result.timestamp)
            result.exchanges_validated = [d.exchange for d in validated]

            snapshots = self.aggregator.aggregate(validated, self.symbols, result.timestamp)
            params = self.engine.current_params()
            result.risks = await self._score_all(snapshots, params, result)

            for risk in result.risks:
                self.risks.publish(risk)

            if self.risk_writer is not None and result.risks:
                result.persisted = await self._persist(result.risks)

        except LiqCastError as e:
            result.error = e
        except Exception as e:
            result.error = CollaboratorFailure(
                f"Cycle failed: {e}", collaborator="cycle", cause=e,
            )

        if result.error is not None:
            log.error("cycle_failed", **result.error.to_dict())
            self.errors.publish(result.error)
        else:
            log.info(
                "cycle_completed",
                exchanges_ok=len(result.exchanges_ok),
                exchanges_failed=result.exchanges_failed,
                exchanges_validated=len(result.exchanges_validated),
                risks=len(result.risks),
                skipped=result.skipped_symbols,
                persisted=result.persisted,
            )

        self.last_cycle = result
        return result

    def close(self) -> None:
        self._executor.shutdown(wait=True)

    # ── Steps ─────────────────────────────────────────────────────────

    async def _fetch_all(self, result: CycleResult) -> list[ExchangeData]:
        outcomes = await asyncio.gather(
            *(adapter.get_all_data(self.symbols) for adapter in self.adapters),
            return_exceptions=True,
        )

        bundles: list[ExchangeData] = []
        for adapter, outcome in zip(self.adapters, outcomes):
            if isinstance(outcome, Exception):
                result.exchanges_failed.append(adapter.name)
                self._report(CollaboratorFailure(
                    f"Exchange {adapter.name} fetch failed: {outcome}",
                    collaborator=adapter.name,
                    error_code=ErrorCode.EXCHANGE_FETCH_FAILED,
                    cause=outcome,
                ))
                continue
            if isinstance(outcome, BaseException):
                raise outcome
            result.exchanges_ok.append(adapter.name)
            bundles.append(outcome)
        return bundles

    async def _score_all(
        self,
        snapshots: list[AggregatedSnapshot],
        params: CalibrationParams,
        result: CycleResult,
    ) -> list[CascadeRisk]:
        loop = asyncio.get_running_loop()
        outcomes = await asyncio.gather(
            *(loop.run_in_executor(self._executor, self.engine.score, snap, params) for snap in snapshots),
            return_exceptions=True,
        )

        risks: list[CascadeRisk] = []
        for snapshot, outcome in zip(snapshots, outcomes):
            if isinstance(outcome, Exception):
                result.skipped_symbols.append(snapshot.symbol)
                self._report(CollaboratorFailure(
                    f"Scoring {snapshot.symbol} failed: {outcome}",
                    collaborator="scoring_engine",
                    cause=outcome,
                ))
            elif isinstance(outcome, BaseException):
                raise outcome
            elif outcome is None:
                result.skipped_symbols.append(snapshot.symbol)
            else:
                risks.append(outcome)
        return risks

    async def _persist(self, risks: list[CascadeRisk]) -> int:
        try:
            return await self.risk_writer.save_risk_scores(risks)
        except Exception as e:
            self._report(CollaboratorFailure(
                f"Persisting risk scores failed: {e}",
                collaborator="risk_score_writer",
                error_code=ErrorCode.PERSISTENCE_FAILED,
                cause=e,
            ))
            return 0

    def _report(self, error: CollaboratorFailure) -> None:
        logger.error("collaborator_failed", **error.to_dict())
        self.errors.publish(error)
