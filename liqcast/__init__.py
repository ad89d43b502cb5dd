"""
LiqCast — Liquidation Cascade Risk Intelligence.

Architecture:
    liqcast/
    ├── schemas/         # Pydantic models (raw metrics, snapshots, risk output)
    ├── pipeline/        # Validation gate, anomaly channels, aggregation
    ├── engine/          # Calibration, factor plugins, cascade scoring, backtest
    ├── db/              # SQLAlchemy models, engine, ground-truth repositories
    └── services/        # Cycle runner, calibration refit job, scheduler

Module Boundaries:
    - Exchange adapters are collaborators — they hand over raw records only
    - Nothing reaches the scoring engine without passing the validation gate
    - Calibration parameters are replaced whole, never mutated in place
    - Every probability has an uncertainty band

Data Flow:
    Exchanges → Validate → Aggregate → Score (+ Calibration) → Risk channel
    Ground truth → Calibration refit → Calibration store → next cycle

Version: 1.0.0
"""

__version__ = "1.0.0"
