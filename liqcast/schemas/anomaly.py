"""
Anomaly schemas emitted by the validation gate.
"""

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict


class ValidationRule(StrEnum):
    NOT_FINITE = "NOT_FINITE"
    INVALID_TIMESTAMP = "INVALID_TIMESTAMP"
    MARK_INDEX_DEVIATION = "MARK_INDEX_DEVIATION"
    FUNDING_OUT_OF_RANGE = "FUNDING_OUT_OF_RANGE"
    STALE_DATA = "STALE_DATA"
    FUTURE_TIMESTAMP = "FUTURE_TIMESTAMP"
    NEGATIVE_OPEN_INTEREST = "NEGATIVE_OPEN_INTEREST"
    PRICE_JUMP = "PRICE_JUMP"
    INVALID_LIQUIDATION = "INVALID_LIQUIDATION"
    NON_POSITIVE_PRICE = "NON_POSITIVE_PRICE"
    UNSUPPORTED_RECORD = "UNSUPPORTED_RECORD"


class AnomalyEvent(BaseModel):
    """
    One rejected reading.

    Informational only: it is published once and never queued or retried.
    """

    model_config = ConfigDict(frozen=True)

    exchange: str
    symbol: str
    field: str
    value: Any
    rule: ValidationRule
    detail: str
    timestamp: float    # When the rejection happened (ms epoch)
