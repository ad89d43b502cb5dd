"""
LiqCast Pipeline — everything between the exchanges and the scoring engine.

Components:
- channels: Explicit pub/sub channels with subscription handles
- validator: Live-path validation gate (finite, deviation, funding, freshness)
- historical: Backfill validation (future timestamps, price jumps, liquidations)
- aggregator: Validated bundles → one AggregatedSnapshot per symbol
"""
