"""
Distance-to-score curves.

normalize() maps a raw distance to [0, 1] where 0 means "at the POI"
and the curve's endpoint is reached at max_distance. The curve shape
controls how quickly the value rises near zero.
"""

import math
from enum import Enum
from typing import Callable, Dict

MIN_SENSITIVITY = 0.1
MAX_SENSITIVITY = 10.0


class DistanceCurve(str, Enum):
    LINEAR = "linear"
    LOG = "log"
    EXP = "exp"
    POWER = "power"


def _linear(ratio: float, sensitivity: float) -> float:
    return ratio


def _log(ratio: float, sensitivity: float) -> float:
    # Higher sensitivity resolves short distances more finely
    log_base = 1 + (math.e - 1) * sensitivity
    return math.log(1 + ratio * (log_base - 1)) / math.log(log_base)


def _exp(ratio: float, sensitivity: float) -> float:
    k = 3 * sensitivity
    return 1 - math.exp(-k * ratio)


def _power(ratio: float, sensitivity: float) -> float:
    n = 0.5 / sensitivity
    return ratio ** n


_CURVES: Dict[DistanceCurve, Callable[[float, float], float]] = {
    DistanceCurve.LINEAR: _linear,
    DistanceCurve.LOG: _log,
    DistanceCurve.EXP: _exp,
    DistanceCurve.POWER: _power,
}

_missing = set(DistanceCurve) - set(_CURVES)
if _missing:
    raise RuntimeError(f"No normalizer registered for curves: {sorted(_missing)}")


def clamp_sensitivity(sensitivity: float) -> float:
    return max(MIN_SENSITIVITY, min(MAX_SENSITIVITY, sensitivity))


def normalize(
    distance: float,
    max_distance: float,
    curve: DistanceCurve = DistanceCurve.LOG,
    sensitivity: float = 1.0,
) -> float:
    """Normalize distance into [0, 1] using the selected curve.

    Distances beyond max_distance (including inf for "nothing found")
    clamp to the curve's endpoint.
    """
    if max_distance <= 0:
        raise ValueError(f"max_distance must be positive, got {max_distance}")
    curve = DistanceCurve(curve)
    ratio = min(max(distance, 0.0), max_distance) / max_distance
    value = _CURVES[curve](ratio, clamp_sensitivity(sensitivity))
    return max(0.0, min(1.0, value))


def curve_endpoint(curve: DistanceCurve, sensitivity: float = 1.0) -> float:
    """Value of normalize() at distance == max_distance."""
    return normalize(1.0, 1.0, curve, sensitivity)
