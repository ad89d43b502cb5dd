"""
Exceptions for LiqCast.

Only conditions that interrupt a unit of work are exceptions. A rejected
record is a ValidationOutcome and a skipped symbol is simply absent from
the cycle's results; neither raises.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    """Standard error codes for LiqCast."""
    UNKNOWN_ERROR = "E1000"

    # Calibration (2xxx)
    CALIBRATION_FIT_FAILED = "E2000"
    CALIBRATION_CORRUPT = "E2001"

    # Collaborators (4xxx)
    COLLABORATOR_FAILURE = "E4000"
    EXCHANGE_FETCH_FAILED = "E4001"
    PERSISTENCE_FAILED = "E4002"


class LiqCastError(Exception):
    """
    Base exception for LiqCast.

    All custom exceptions inherit from this class.
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.UNKNOWN_ERROR,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        self.cause = cause

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/reports."""
        result: Dict[str, Any] = {
            "error_code": self.error_code.value,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        if self.cause is not None:
            result["cause"] = repr(self.cause)
        return result

    def __str__(self) -> str:
        return f"[{self.error_code.value}] {self.message}"


class CalibrationFitFailure(LiqCastError):
    """Historical sample is too small or degenerate to refit calibration."""

    def __init__(self, message: str, n_samples: int = 0, n_positive: int = 0, **kwargs):
        super().__init__(
            message=message,
            error_code=ErrorCode.CALIBRATION_FIT_FAILED,
            details={"n_samples": n_samples, "n_positive": n_positive},
            **kwargs,
        )
        self.n_samples = n_samples
        self.n_positive = n_positive


class CorruptCalibrationError(LiqCastError):
    """Calibration parameters with non-finite slope/intercept were loaded."""

    def __init__(self, message: str, slope: Any = None, intercept: Any = None, **kwargs):
        super().__init__(
            message=message,
            error_code=ErrorCode.CALIBRATION_CORRUPT,
            details={"slope": repr(slope), "intercept": repr(intercept)},
            **kwargs,
        )


class CollaboratorFailure(LiqCastError):
    """An exchange adapter, aggregator, or persistence call failed."""

    def __init__(
        self,
        message: str,
        collaborator: str,
        error_code: ErrorCode = ErrorCode.COLLABORATOR_FAILURE,
        **kwargs,
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            details={"collaborator": collaborator},
            **kwargs,
        )
        self.collaborator = collaborator
