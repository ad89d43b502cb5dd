"""
Cascade event repository — the ground truth for calibration and backtests.

Inserts are idempotent: the primary key is the natural key
"<symbol>:<direction>:<start_ms>" and conflicts are skipped.
Range reads are ordered by start_time ascending.
"""

from datetime import datetime
from typing import Optional, Sequence

import structlog
from sqlalchemy import func, select

from liqcast.db.compat import to_epoch_ms
from liqcast.db.engine import session_scope
from liqcast.db.models import CascadeEventRow
from liqcast.db.repositories.base import SessionRepository, insert_ignoring_conflicts
from liqcast.schemas.risk import CascadeDirection, CascadeEvent

logger = structlog.get_logger(__name__)


def cascade_event_id(symbol: str, direction: str, start_time_ms: int) -> str:
    """Stable ID, e.g. "BTC:LONG_SQUEEZE:1700000000000"."""
    return f"{symbol}:{direction}:{int(start_time_ms)}"


def _values(event: CascadeEvent) -> dict:
    direction = CascadeDirection(event.direction)
    return {
        "id": cascade_event_id(event.symbol, direction.value, to_epoch_ms(event.start_time)),
        "symbol": event.symbol,
        "direction": direction.value,
        "start_time": event.start_time,
        "end_time": event.end_time,
        "price_change_pct": event.price_change_pct,
        "liquidation_volume_usd": event.liquidation_volume_usd,
    }


class CascadeRepository(SessionRepository):
    """Implements GroundTruthRepository."""

    # ── Writes ────────────────────────────────────────────────────────

    async def insert_cascade_event(self, event: CascadeEvent) -> str:
        """Insert one event; returns its ID whether or not it already existed."""
        values = _values(event)
        async with session_scope(self.session_factory) as session:
            await session.execute(insert_ignoring_conflicts(session, CascadeEventRow.__table__).values(**values))
        return values["id"]

    async def insert_cascade_events(self, events: Sequence[CascadeEvent]) -> int:
        """Insert a batch in one transaction. Returns rows actually inserted."""
        if not events:
            return 0

        inserted = 0
        async with session_scope(self.session_factory) as session:
            for event in events:
                result = await session.execute(
                    insert_ignoring_conflicts(session, CascadeEventRow.__table__).values(**_values(event))
                )
                if result.rowcount and result.rowcount > 0:
                    inserted += 1

        logger.info("cascade_events_inserted", submitted=len(events), inserted=inserted)
        return inserted

    # ── Reads ─────────────────────────────────────────────────────────

    async def get_cascade_events(self, symbol: str, start: datetime, end: datetime) -> list[CascadeEvent]:
        """Events with start_time in [start, end], oldest first."""
        stmt = (
            select(CascadeEventRow)
            .where(
                CascadeEventRow.symbol == symbol,
                CascadeEventRow.start_time >= start,
                CascadeEventRow.start_time <= end,
            )
            .order_by(CascadeEventRow.start_time.asc())
        )
        return await self._fetch(stmt)

    async def get_cascade_events_by_direction(
        self,
        symbol: str,
        direction: CascadeDirection,
        start: datetime,
        end: datetime,
    ) -> list[CascadeEvent]:
        stmt = (
            select(CascadeEventRow)
            .where(
                CascadeEventRow.symbol == symbol,
                CascadeEventRow.direction == CascadeDirection(direction).value,
                CascadeEventRow.start_time >= start,
                CascadeEventRow.start_time <= end,
            )
            .order_by(CascadeEventRow.start_time.asc())
        )
        return await self._fetch(stmt)

    async def get_recent_cascade_events(self, limit: int = 50, symbol: Optional[str] = None) -> list[CascadeEvent]:
        """Most recent events first."""
        stmt = select(CascadeEventRow).order_by(CascadeEventRow.start_time.desc()).limit(limit)
        if symbol is not None:
            stmt = stmt.where(CascadeEventRow.symbol == symbol)
        return await self._fetch(stmt)

    async def count_by_symbol(self) -> dict[str, int]:
        stmt = (
            select(CascadeEventRow.symbol, func.count())
            .group_by(CascadeEventRow.symbol)
            .order_by(CascadeEventRow.symbol)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return {symbol: count for symbol, count in result.all()}

    async def _fetch(self, stmt) -> list[CascadeEvent]:
        async with self.session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [CascadeEvent.model_validate(row) for row in rows]
