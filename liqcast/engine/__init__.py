"""
LiqCast Scoring Engine.

Components:
- calibration: Logistic calibration fit (IRLS), Wilson and Wald intervals
- calibration_store: Atomic holder of the current calibration parameters
- factors: Cascade factor plugins and the default ordered registry
- scoring: Factor combination, risk levels, directional predictions
- backtest: Precision/recall evaluation of stored scores vs. cascades
"""
