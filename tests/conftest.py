"""
Test fixtures for LiqCast tests.

Provides:
- Async DB engine + session factory (SQLite in-memory, fresh per test)
- A fixed clock so staleness checks are deterministic
- Factories for exchange bundles, aggregated snapshots and cascade history
"""

from typing import Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from liqcast.db.engine import Base
from liqcast.db.models import CalibrationRun, CascadeEventRow, RiskScoreRow  # noqa: F401  register all models
from liqcast.schemas.market import ExchangeData, FundingRate, Liquidation, MarkPrice, MarkPricePoint, OpenInterest
from liqcast.schemas.snapshot import AggregatedSnapshot

# In-memory SQLite for fast, isolated tests
TEST_DB_URL = "sqlite+aiosqlite:///:memory:"

# 2023-11-14T22:13:20Z
NOW_MS = 1_700_000_000_000.0


@pytest_asyncio.fixture
async def engine():
    """Create a test database engine with all tables."""
    eng = create_async_engine(TEST_DB_URL, echo=False)
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    """Create a session factory bound to the test engine."""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def now_ms() -> float:
    return NOW_MS


@pytest.fixture
def clock():
    """Zero-argument clock pinned at NOW_MS."""
    return lambda: NOW_MS


# ── Market Data Factories ────────────────────────────────────────────────


def _bundle(
    exchange: str = "binance",
    symbol: str = "BTC",
    mark_price: Optional[float] = 100.0,
    index_price: float = 100.0,
    funding_rate: Optional[float] = 0.0001,
    open_interest_value: Optional[float] = 1_000_000.0,
    timestamp: float = NOW_MS,
) -> ExchangeData:
    return ExchangeData(
        exchange=exchange,
        open_interest=[] if open_interest_value is None else [
            OpenInterest(
                exchange=exchange,
                symbol=symbol,
                open_interest=open_interest_value / 100.0,
                open_interest_value=open_interest_value,
                timestamp=timestamp,
            )
        ],
        funding_rates=[] if funding_rate is None else [
            FundingRate(exchange=exchange, symbol=symbol, funding_rate=funding_rate, timestamp=timestamp)
        ],
        mark_prices=[] if mark_price is None else [
            MarkPrice(
                exchange=exchange,
                symbol=symbol,
                mark_price=mark_price,
                index_price=index_price,
                timestamp=timestamp,
            )
        ],
        timestamp=timestamp,
    )


def _snapshot(**overrides) -> AggregatedSnapshot:
    values = dict(
        symbol="BTC",
        timestamp=NOW_MS,
        exchanges=["binance", "bybit"],
        avg_mark_price=100.0,
        median_index_price=100.0,
        total_open_interest_value=2_000_000.0,
        avg_funding_rate=0.001,
        mark_price_by_exchange={"binance": 100.0, "bybit": 100.0},
        index_price_by_exchange={"binance": 100.0, "bybit": 100.0},
        open_interest_by_exchange={"binance": 1_000_000.0, "bybit": 1_000_000.0},
        funding_rate_by_exchange={"binance": 0.001, "bybit": 0.001},
        mark_price_history=[],
        previous_open_interest=None,
    )
    values.update(overrides)
    return AggregatedSnapshot(**values)


@pytest.fixture
def make_bundle():
    """Factory: one exchange's bundle for one symbol."""
    return _bundle


@pytest.fixture
def make_snapshot():
    """Factory: an AggregatedSnapshot with sane two-exchange defaults."""
    return _snapshot


# ── Cascade History Factory ──────────────────────────────────────────────

MINUTE_MS = 60_000.0


def _cascade_history(
    move_pct: float = -3.0,
    print_usd: float = 250_000.0,
    print_sides: tuple[str, ...] = ("SELL",),
    minutes: int = 120,
    move_at: int = 90,
    symbol: str = "BTC",
    end_ms: float = NOW_MS,
) -> tuple[list[MarkPricePoint], list[Liquidation]]:
    """
    One-minute mark prices with ±0.1% alternating noise, a `move_pct` move
    over the three minutes after `move_at`, and liquidation prints of
    `print_usd` per side at move_at+1 and move_at+2. Every minute also
    carries a 1k background print, alternating sides.
    """
    start = end_ms - minutes * MINUTE_MS
    prices, prints = [], []
    for i in range(minutes):
        ts = start + i * MINUTE_MS
        level = 100.0 + move_pct * min(max(i - move_at, 0), 3) / 3
        noise = 1.001 if i % 2 else 1.0
        prices.append(MarkPricePoint(symbol=symbol, timestamp=ts, mark_price=level * noise))
        prints.append(Liquidation(
            exchange="binance", symbol=symbol, side="SELL" if i % 2 else "BUY",
            price=level, quantity=1_000.0 / level, usd_value=1_000.0, timestamp=ts,
        ))
        if i in (move_at + 1, move_at + 2):
            for side in print_sides:
                prints.append(Liquidation(
                    exchange="binance", symbol=symbol, side=side,
                    price=level, quantity=print_usd / level, usd_value=print_usd, timestamp=ts,
                ))
    return prices, prints


@pytest.fixture
def cascade_history():
    """Factory: (mark prices, liquidations) around one sharp move."""
    return _cascade_history
