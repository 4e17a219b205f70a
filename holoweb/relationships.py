"""
Holoweb Relationships - Source Value to Parameter Delta
=======================================================

A relationship turns one signed source value (magnitude × polarity) into a
delta for a single parameter. The evaluator is total: it never raises and
never returns NaN or infinity.

    linear       v × k
    inverse      (1 - v) × k
    exponential  sign(v) × |v|² × k
    logarithmic  sign(v) × ln(max(0.01, |v|)) × k × 0.5
    custom       curve(v) × k     (curve validated before first use)

Custom curves come from the host and are untrusted. Each curve is sampled once
at a fixed set of points; a curve that raises or goes non-finite is rejected
for good and the relationship behaves as linear from then on.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional, Tuple

import numpy as np


logger = logging.getLogger(__name__)


SAFE_LIMIT = 1000.0
CURVE_SAMPLE_POINTS: Tuple[float, ...] = (0.0, 0.5, 1.0, -0.5, -1.0)
LOG_FLOOR = 0.01

Curve = Callable[[float], float]


class RelationshipKind(str, Enum):
    LINEAR = 'linear'
    INVERSE = 'inverse'
    EXPONENTIAL = 'exponential'
    LOGARITHMIC = 'logarithmic'
    CUSTOM = 'custom'


@dataclass(frozen=True)
class Relationship:
    """How a cascade source value maps to a parameter delta."""
    kind: RelationshipKind = RelationshipKind.LINEAR
    intensity: float = 1.0
    curve: Optional[Curve] = None   # only consulted for CUSTOM

    def to_dict(self) -> Dict[str, object]:
        # curves are code, not data
        return {'kind': self.kind.value, 'intensity': self.intensity}


def sanitize(value: float) -> float:
    """Replace non-finite values with 0 and clamp to the safe limit."""
    try:
        value = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(value):
        return 0.0
    return float(np.clip(value, -SAFE_LIMIT, SAFE_LIMIT))


# =============================================================================
# Evaluator
# =============================================================================

class RelationshipEvaluator:
    """
    Applies relationships, caching custom-curve verdicts by identity.

    The verdict cache keeps a strong reference to each curve so that an id
    is never reused by a different object while its verdict is cached.
    """

    def __init__(self):
        self._verdicts: Dict[int, Tuple[Curve, bool]] = {}

    def apply(self, source_value: float, relationship: Relationship) -> float:
        value = sanitize(source_value)
        intensity = sanitize(relationship.intensity)
        kind = relationship.kind

        if kind is RelationshipKind.CUSTOM:
            curve = relationship.curve
            if curve is not None and self.is_curve_valid(curve):
                return sanitize(self._call_curve(curve, value) * intensity)
            kind = RelationshipKind.LINEAR

        if kind is RelationshipKind.LINEAR:
            result = value * intensity
        elif kind is RelationshipKind.INVERSE:
            result = (1.0 - value) * intensity
        elif kind is RelationshipKind.EXPONENTIAL:
            result = float(np.sign(value)) * value * value * intensity
        elif kind is RelationshipKind.LOGARITHMIC:
            magnitude = max(LOG_FLOOR, abs(value))
            result = float(np.sign(value)) * math.log(magnitude) * intensity * 0.5
        else:
            result = value * intensity

        return sanitize(result)

    def is_curve_valid(self, curve: Curve) -> bool:
        """Sample a curve once; later calls return the cached verdict."""
        cached = self._verdicts.get(id(curve))
        if cached is not None and cached[0] is curve:
            return cached[1]

        valid = True
        for point in CURVE_SAMPLE_POINTS:
            try:
                result = float(curve(point))
            except Exception as e:
                logger.warning(f"Custom curve {curve!r} raised at x={point}: {e}; using linear")
                valid = False
                break
            if not math.isfinite(result):
                logger.warning(f"Custom curve {curve!r} is non-finite at x={point}; using linear")
                valid = False
                break

        self._verdicts[id(curve)] = (curve, valid)
        return valid

    def forget_curves(self) -> None:
        """Drop all cached verdicts."""
        self._verdicts.clear()

    @staticmethod
    def _call_curve(curve: Curve, value: float) -> float:
        # A validated curve can still misbehave off the sample points
        try:
            return float(curve(value))
        except Exception as e:
            logger.debug(f"Custom curve {curve!r} raised at x={value}: {e}")
            return 0.0


# =============================================================================
# Exports
# =============================================================================

__all__ = [
    'SAFE_LIMIT',
    'CURVE_SAMPLE_POINTS',
    'Curve',
    'RelationshipKind',
    'Relationship',
    'sanitize',
    'RelationshipEvaluator',
]
