"""Calibration run audit trail."""

from typing import Optional

from sqlalchemy import select

from liqcast.db.engine import session_scope
from liqcast.db.models import CalibrationRun
from liqcast.db.repositories.base import SessionRepository


class CalibrationRunRepository(SessionRepository):

    async def record_run(self, report: dict) -> int:
        """Append one run built from a CalibrationReport.to_dict(). Returns its id."""
        params = report.get("params") or {}
        run = CalibrationRun(
            published=bool(report.get("published")),
            version=params.get("version"),
            slope=params.get("slope"),
            intercept=params.get("intercept"),
            n_samples=int(report.get("n_samples", 0)),
            n_positive=int(report.get("n_positive", 0)),
            error=report.get("error"),
            report=report,
        )
        async with session_scope(self.session_factory) as session:
            session.add(run)
            await session.flush()
            run_id = run.id
        return run_id

    async def latest_published(self) -> Optional[CalibrationRun]:
        """Most recent run whose parameters were published, if any."""
        stmt = (
            select(CalibrationRun)
            .where(CalibrationRun.published.is_(True))
            .order_by(CalibrationRun.created_at.desc(), CalibrationRun.id.desc())
            .limit(1)
        )
        async with self.session_factory() as session:
            return (await session.execute(stmt)).scalar_one_or_none()
