"""
Scheduler Entry Point — runs the monitor as a long-lived process.

Usage:
    python -m liqcast.scheduler_main

This does NOT run a web server. It runs the APScheduler background loop
for the poll cycle and the calibration refit.

Exchange adapters are discovered through the "liqcast.exchanges" entry
point group; each entry point resolves to a zero-argument factory that
returns an ExchangeAdapter.

A stored price and liquidation history for cascade detection comes from the
"liqcast.history_sources" group the same way; without one, the calibration
refit labels against whatever ground truth is already stored.
"""

import asyncio
import signal
from importlib.metadata import entry_points
from typing import Optional, Sequence

import structlog

from liqcast.config import settings
from liqcast.db.engine import close_db, get_session_factory, init_db
from liqcast.db.repositories.calibration_runs import CalibrationRunRepository
from liqcast.db.repositories.cascade import CascadeRepository
from liqcast.db.repositories.risk_scores import RiskScoreRepository
from liqcast.engine.calibration_store import CalibrationStore
from liqcast.engine.detector import DetectorConfig
from liqcast.engine.scoring import CascadeScoringEngine, RiskEngineConfig
from liqcast.log_config import configure_logging
from liqcast.pipeline.aggregator import CrossExchangeAggregator
from liqcast.pipeline.validator import MetricValidator, ValidationConfig
from liqcast.services.calibration_job import CalibrationJob
from liqcast.services.detection_job import CascadeDetectionJob
from liqcast.services.interfaces import ExchangeAdapter, HistorySource, RiskScoreWriter
from liqcast.services.monitor import CascadeMonitor
from liqcast.services.scheduler import MonitorScheduler

logger = structlog.get_logger(__name__)

ADAPTER_ENTRY_POINT_GROUP = "liqcast.exchanges"
HISTORY_ENTRY_POINT_GROUP = "liqcast.history_sources"


def discover_adapters() -> list[ExchangeAdapter]:
    """Instantiate every installed exchange adapter."""
    adapters: list[ExchangeAdapter] = []
    for ep in entry_points(group=ADAPTER_ENTRY_POINT_GROUP):
        adapter = ep.load()()
        if not isinstance(adapter, ExchangeAdapter):
            raise TypeError(f"Entry point {ep.name} did not produce an ExchangeAdapter")
        adapters.append(adapter)
        logger.info("exchange_adapter_loaded", name=adapter.name)
    return adapters


def discover_history_source() -> Optional[HistorySource]:
    """The first installed history source, if any."""
    for ep in entry_points(group=HISTORY_ENTRY_POINT_GROUP):
        source = ep.load()()
        if not isinstance(source, HistorySource):
            raise TypeError(f"Entry point {ep.name} did not produce a HistorySource")
        logger.info("history_source_loaded", name=ep.name)
        return source
    return None


def build_monitor(
    adapters: Sequence[ExchangeAdapter],
    store: CalibrationStore,
    risk_writer: Optional[RiskScoreWriter] = None,
) -> CascadeMonitor:
    """Gate, aggregator and engine configured from settings."""
    return CascadeMonitor(
        adapters=adapters,
        symbols=settings.symbols,
        validator=MetricValidator(config=ValidationConfig.from_settings()),
        aggregator=CrossExchangeAggregator(
            history_length=settings.price_history_length,
            spread_history_length=settings.spread_history_length,
        ),
        engine=CascadeScoringEngine(config=RiskEngineConfig.from_settings(), calibration=store),
        risk_writer=risk_writer,
        scoring_workers=settings.scoring_workers,
    )


async def build_scheduler(
    adapters: Sequence[ExchangeAdapter],
    history_source: Optional[HistorySource] = None,
) -> MonitorScheduler:
    """Wire repositories, calibration, engine and monitor into a scheduler."""
    session_factory = get_session_factory()
    cascades = CascadeRepository(session_factory)
    risk_scores = RiskScoreRepository(session_factory)
    runs = CalibrationRunRepository(session_factory)

    store = CalibrationStore()
    calibration_job = CalibrationJob(
        scores=risk_scores,
        ground_truth=cascades,
        store=store,
        symbols=settings.symbols,
        runs=runs,
    )
    restored = await calibration_job.restore_latest()
    logger.info("calibration_restored", version=(restored or store.current()).version)

    monitor = build_monitor(
        adapters,
        store,
        risk_writer=risk_scores if settings.persist_risk_scores else None,
    )
    detection_job = None
    if history_source is not None and settings.detection_enabled:
        detection_job = CascadeDetectionJob(
            source=history_source,
            repository=cascades,
            symbols=settings.symbols,
            config=DetectorConfig.from_settings(),
        )
    return MonitorScheduler(monitor, calibration_job=calibration_job, detection_job=detection_job)


async def main(adapters: Optional[Sequence[ExchangeAdapter]] = None):
    """Initialize and run the scheduler."""
    configure_logging(settings.log_level, settings.log_format)
    logger.info("scheduler_starting", version=settings.app_version, symbols=settings.symbols)

    await init_db()

    if adapters is None:
        adapters = discover_adapters()
    if not adapters:
        logger.warning("no_exchange_adapters", group=ADAPTER_ENTRY_POINT_GROUP)

    history_source = discover_history_source()
    if history_source is None:
        logger.info("no_history_source", group=HISTORY_ENTRY_POINT_GROUP)

    scheduler = await build_scheduler(adapters, history_source)

    # Run an initial cycle on startup
    logger.info("running_initial_cycle")
    await scheduler.run_cycle()

    scheduler.start()

    # Graceful shutdown handling
    stop_event = asyncio.Event()

    def _handle_signal(signum, frame):
        logger.info("shutdown_signal_received", signal=signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    logger.info("scheduler_running", msg="Waiting for jobs... Ctrl+C to stop.")

    await stop_event.wait()

    # Cleanup
    await scheduler.stop()
    await close_db()
    logger.info("scheduler_shutdown_complete")


def run():
    """Console script entry point."""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
