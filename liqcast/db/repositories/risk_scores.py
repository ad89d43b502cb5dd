"""Risk score repository — what the engine said, and when."""

from datetime import datetime
from typing import Iterable

import structlog
from sqlalchemy import select

from liqcast.db.engine import session_scope
from liqcast.db.models import RiskScoreRow
from liqcast.db.repositories.base import SessionRepository, insert_ignoring_conflicts
from liqcast.schemas.risk import CascadeRisk, RiskScoreRecord

logger = structlog.get_logger(__name__)


class RiskScoreRepository(SessionRepository):
    """Implements RiskScoreReader."""

    async def save_risk_scores(self, risks: Iterable[CascadeRisk]) -> int:
        """Persist one row per risk; an existing (time, symbol) row is kept."""
        records = [RiskScoreRecord.from_risk(r) for r in risks]
        if not records:
            return 0

        inserted = 0
        async with session_scope(self.session_factory) as session:
            for record in records:
                values = record.model_dump()
                values["risk_level"] = record.risk_level.value
                if record.prediction_direction is not None:
                    values["prediction_direction"] = record.prediction_direction.value
                result = await session.execute(
                    insert_ignoring_conflicts(session, RiskScoreRow.__table__).values(**values)
                )
                if result.rowcount and result.rowcount > 0:
                    inserted += 1

        logger.debug("risk_scores_saved", submitted=len(records), inserted=inserted)
        return inserted

    async def get_risk_scores(self, symbol: str, start: datetime, end: datetime) -> list[RiskScoreRecord]:
        """Rows with time in [start, end], oldest first."""
        stmt = (
            select(RiskScoreRow)
            .where(
                RiskScoreRow.symbol == symbol,
                RiskScoreRow.time >= start,
                RiskScoreRow.time <= end,
            )
            .order_by(RiskScoreRow.time.asc())
        )
        async with self.session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [RiskScoreRecord.model_validate(row) for row in rows]
