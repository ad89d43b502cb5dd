"""
Collaborator interfaces.

The core never imports a concrete exchange client, alert channel, or storage
driver. It talks to these Protocols; anything with matching methods plugs in.
"""

from datetime import datetime
from typing import Optional, Protocol, Sequence, runtime_checkable

from liqcast.schemas.market import ExchangeData, Liquidation, MarkPricePoint
from liqcast.schemas.risk import CascadeEvent, CascadeRisk, RiskScoreRecord
from liqcast.schemas.snapshot import AggregatedSnapshot


@runtime_checkable
class ExchangeAdapter(Protocol):
    """One derivatives venue. Transport, retries and rate limits are its own business."""

    name: str

    async def get_all_data(self, symbols: list[str]) -> ExchangeData:
        ...


@runtime_checkable
class Aggregator(Protocol):
    def aggregate(
        self,
        validated: list[ExchangeData],
        symbols: list[str],
        timestamp: Optional[float] = None,
    ) -> list[AggregatedSnapshot]:
        ...


@runtime_checkable
class GroundTruthRepository(Protocol):
    async def insert_cascade_event(self, event: CascadeEvent) -> str:
        ...

    async def get_cascade_events(self, symbol: str, start: datetime, end: datetime) -> list[CascadeEvent]:
        ...


@runtime_checkable
class RiskScoreReader(Protocol):
    async def get_risk_scores(self, symbol: str, start: datetime, end: datetime) -> list[RiskScoreRecord]:
        ...


@runtime_checkable
class RiskScoreWriter(Protocol):
    async def save_risk_scores(self, risks: Sequence[CascadeRisk]) -> int:
        ...


@runtime_checkable
class HistorySource(Protocol):
    """Stored price and liquidation history for cascade detection."""

    async def get_mark_prices(self, symbol: str, start: datetime, end: datetime) -> list[MarkPricePoint]:
        ...

    async def get_liquidations(self, symbol: str, start: datetime, end: datetime) -> list[Liquidation]:
        ...


@runtime_checkable
class CascadeEventWriter(Protocol):
    async def insert_cascade_events(self, events: Sequence[CascadeEvent]) -> int:
        ...
