"""
Bias correction lookup for HyperLogLog raw estimates.

The calibration rows in ``bias_data`` are loaded once into read-only numpy
arrays. A correction is the mean measured bias of the ``BIAS_NEIGHBORS``
sample points closest to the raw estimate.
"""

from typing import Sequence, Tuple
import numpy as np # type: ignore
from cardinal.lib.bias_data import RAW_ESTIMATE_DATA, BIAS_DATA
from cardinal.lib.errors import InvalidArgumentError

MIN_PRECISION = 4
MAX_PRECISION = MIN_PRECISION + len(RAW_ESTIMATE_DATA) - 1
BIAS_NEIGHBORS = 6


def _freeze(rows: Sequence[Sequence[float]]) -> Tuple[np.ndarray, ...]:
    frozen = []
    for row in rows:
        arr = np.array(row, dtype=np.float64)
        arr.flags.writeable = False
        frozen.append(arr)
    return tuple(frozen)


_RAW_ESTIMATES = _freeze(RAW_ESTIMATE_DATA)
_BIASES = _freeze(BIAS_DATA)


def supported_precisions() -> range:
    """Precisions for which calibration data exists."""
    return range(MIN_PRECISION, MAX_PRECISION + 1)


def check_precision(precision: int) -> None:
    """Raise InvalidArgumentError unless ``precision`` has calibration data."""
    if precision not in supported_precisions():
        raise InvalidArgumentError(
            f"Precision must be between {MIN_PRECISION} and {MAX_PRECISION}, got {precision}")


def bias_range(precision: int) -> float:
    """Upper bound of the raw-estimate range where bias correction applies.

    Args:
        precision: Sketch precision

    Returns:
        Five times the number of registers
    """
    check_precision(precision)
    return 5.0 * (1 << precision)


def calibration_rows(precision: int) -> Tuple[np.ndarray, np.ndarray]:
    """Return the (raw estimates, biases) sample arrays for a precision."""
    check_precision(precision)
    row = precision - MIN_PRECISION
    return _RAW_ESTIMATES[row], _BIASES[row]


def nearest_neighbors(raw_estimate: float, estimates: np.ndarray,
                      k: int = BIAS_NEIGHBORS) -> np.ndarray:
    """Indices of the ``k`` sample points closest to ``raw_estimate``.

    The sample rows are not perfectly sorted, so the neighbours are found by
    sorting squared distances rather than by bisection. Ties keep table order.
    """
    distances = (raw_estimate - estimates) ** 2
    return np.argsort(distances, kind='stable')[:k]


def bias(precision: int, raw_estimate: float) -> float:
    """Estimate the bias of a raw HyperLogLog estimate.

    Args:
        precision: Sketch precision, selects the calibration row
        raw_estimate: Uncorrected estimate alpha * m^2 / Z

    Returns:
        Mean measured bias of the nearest calibration points

    Raises:
        InvalidArgumentError: If no calibration data exists for the precision
    """
    estimates, biases = calibration_rows(precision)
    nearest = nearest_neighbors(raw_estimate, estimates)
    return float(np.mean(biases[nearest]))
