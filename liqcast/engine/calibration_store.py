"""
Calibration Store — the single holder of the current CalibrationParams.

Readers call current() without taking a lock: the store hands out a
reference to an immutable CalibrationParams, and publish() replaces that
reference in one assignment. A reader therefore sees either the old set or
the new set, never a mix, and a scoring cycle that already read the old set
keeps using it until the cycle ends.

Usage:
    store = CalibrationStore()
    params = store.current()            # scoring path
    store.publish(fit.params)           # calibration job
"""

import threading
from typing import Any, Mapping, Optional

import structlog

from liqcast.engine.calibration import (
    DEFAULT_CALIBRATION,
    CalibrationParams,
    validate_params,
)
from liqcast.errors import CorruptCalibrationError

logger = structlog.get_logger(__name__)


class CalibrationStore:
    """Copy-on-write holder; publish() is the only mutation."""

    def __init__(self, initial: Optional[CalibrationParams] = None):
        self._params: CalibrationParams = validate_params(initial or DEFAULT_CALIBRATION)
        self._write_lock = threading.Lock()
        self._generation = 0

    def current(self) -> CalibrationParams:
        return self._params

    @property
    def generation(self) -> int:
        """Number of successful publishes since construction."""
        return self._generation

    def publish(self, params: CalibrationParams) -> CalibrationParams:
        """
        Validate and swap in a new parameter set. Returns the previous one.

        Raises:
            CorruptCalibrationError: params failed validation; nothing changed.
        """
        validate_params(params)
        with self._write_lock:
            previous = self._params
            self._params = params
            self._generation += 1

        logger.info(
            "calibration_published",
            version=params.version,
            slope=round(params.slope, 6),
            intercept=round(params.intercept, 6),
            n_bins=len(params.bins),
            previous_version=previous.version,
            generation=self._generation,
        )
        return previous

    def load(self, data: Mapping[str, Any]) -> CalibrationParams:
        """
        Load persisted parameters, falling back to DEFAULT_CALIBRATION.

        Non-finite slope/intercept (or any other invalid field) is logged as
        corrupt and the default is published instead.
        """
        try:
            params = CalibrationParams.from_dict(dict(data))
            validate_params(params)
        except (CorruptCalibrationError, KeyError, TypeError, ValueError) as e:
            logger.error(
                "calibration_load_corrupt",
                error=str(e),
                slope=repr(data.get("slope")),
                intercept=repr(data.get("intercept")),
                fallback=DEFAULT_CALIBRATION.version,
            )
            self.publish(DEFAULT_CALIBRATION)
            return DEFAULT_CALIBRATION

        self.publish(params)
        return params

    def reset(self) -> None:
        self.publish(DEFAULT_CALIBRATION)
