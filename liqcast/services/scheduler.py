"""
Monitor Scheduler — drives the poll cycle and the calibration refit.

Jobs:
1. Monitor cycle (every poll_interval_seconds): fetch → validate → score
2. Calibration refit (every calibration_interval_hours), when a job is given;
   cascade detection runs first so the refit labels against fresh ground truth

A cycle still running when the next tick fires is not overlapped; the
missed tick is coalesced into the next one. stop() lets running jobs
finish before the scoring pool is released.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from liqcast.config import settings
from liqcast.services.calibration_job import CalibrationJob
from liqcast.services.detection_job import CascadeDetectionJob
from liqcast.services.monitor import CascadeMonitor

logger = structlog.get_logger(__name__)

_SHUTDOWN_YIELDS = 10


class MonitorScheduler:
    """Background scheduler for the monitor and the calibration job."""

    def __init__(
        self,
        monitor: CascadeMonitor,
        calibration_job: Optional[CalibrationJob] = None,
        detection_job: Optional[CascadeDetectionJob] = None,
        poll_interval_seconds: Optional[float] = None,
        calibration_interval_hours: Optional[float] = None,
    ):
        self.monitor = monitor
        self.calibration_job = calibration_job
        self.detection_job = detection_job
        self.poll_interval_seconds = poll_interval_seconds or settings.poll_interval_seconds
        self.calibration_interval_hours = calibration_interval_hours or settings.calibration_interval_hours
        if self.poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be > 0")
        if self.calibration_interval_hours <= 0:
            raise ValueError("calibration_interval_hours must be > 0")
        self.scheduler = AsyncIOScheduler()
        self._active: set[asyncio.Task] = set()
        self._stopping = False

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def start(self):
        """Register and start all scheduled jobs."""
        self.scheduler.add_job(
            self.run_cycle,
            IntervalTrigger(seconds=self.poll_interval_seconds),
            id="monitor_cycle",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        if self.calibration_job is not None:
            self.scheduler.add_job(
                self.run_calibration,
                IntervalTrigger(hours=self.calibration_interval_hours),
                id="calibration_refit",
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )
        self.scheduler.start()
        logger.info(
            "monitor_scheduler_started",
            poll_interval_seconds=self.poll_interval_seconds,
            calibration=self.calibration_job is not None,
            detection=self.detection_job is not None,
        )

    async def stop(self, timeout: Optional[float] = None):
        """
        Gracefully stop the scheduler and release the scoring pool.

        New ticks are ignored from here on; jobs already running get up to
        `timeout` seconds (graceful_shutdown_seconds by default) to finish
        and are cancelled after that. The scoring pool is closed only once
        no job is left.
        """
        timeout = settings.graceful_shutdown_seconds if timeout is None else timeout
        self._stopping = True

        active = {task for task in self._active if not task.done()}
        if active:
            logger.info("monitor_scheduler_draining", jobs=len(active), timeout=timeout)
            _, pending = await asyncio.wait(active, timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
                logger.warning("monitor_scheduler_jobs_cancelled", jobs=len(pending))

        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            # AsyncIOScheduler applies shutdown on its loop; let it run
            for _ in range(_SHUTDOWN_YIELDS):
                if not self.scheduler.running:
                    break
                await asyncio.sleep(0)

        self.monitor.close()
        logger.info("monitor_scheduler_stopped")

    async def run_cycle(self):
        if self._stopping:
            return
        async with self._track():
            try:
                await self.monitor.run_cycle()
            except Exception as e:
                logger.error("monitor_cycle_job_failed", error=str(e))

    async def run_calibration(self):
        if self.calibration_job is None or self._stopping:
            return
        async with self._track():
            if self.detection_job is not None:
                try:
                    await self.detection_job.run()
                except Exception as e:
                    logger.error("cascade_detection_job_failed", error=str(e))

            logger.info("calibration_refit_started")
            try:
                report = await self.calibration_job.run()
            except Exception as e:
                logger.error("calibration_refit_job_failed", error=str(e))
                return
            logger.info(
                "calibration_refit_finished",
                published=report.published,
                n_samples=report.n_samples,
                error_code=report.error_code,
            )

    @asynccontextmanager
    async def _track(self):
        task = asyncio.current_task()
        self._active.add(task)
        try:
            yield
        finally:
            self._active.discard(task)
