"""
Holoweb Parameters - The Shared Visual Vocabulary
=================================================

Every rendered surface is driven by the same ten scalars. The home vector
holds them once; sections and layers derive their own copies from it.

    home vector → section vector → layer vector → renderers

Each field has a declared range. Cyclic fields (hue, beat_phase) wrap into
[0, 1); the rest are clamped. Nothing outside these ranges ever leaves the
engine.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, fields
from enum import Enum
from typing import Dict, Any, Optional, Tuple

import numpy as np


# =============================================================================
# Layers
# =============================================================================

class LayerType(str, Enum):
    """Render layers stacked inside every section."""
    BACKGROUND = 'background'
    SHADOW = 'shadow'
    CONTENT = 'content'
    HIGHLIGHT = 'highlight'
    ACCENT = 'accent'


LAYERS: Tuple[str, ...] = tuple(layer.value for layer in LayerType)

# Per-layer scaling applied to the section base before deltas
LAYER_DENSITY_SCALE: Dict[str, float] = {
    'background': 0.7,
    'accent': 0.5,
}
LAYER_CHAOS_SCALE: Dict[str, float] = {
    'shadow': 0.8,
    'highlight': 1.2,
}


# =============================================================================
# Field Ranges
# =============================================================================

@dataclass(frozen=True)
class ParamRange:
    """Valid range for one parameter field."""
    low: float
    high: float
    cyclic: bool = False    # wraps into [low, high) instead of clamping

    def apply(self, value: float) -> float:
        """Bring a finite value into range."""
        if self.cyclic:
            span = self.high - self.low
            wrapped = self.low + (value - self.low) % span
            # float modulo can land exactly on the open upper bound
            return self.low if wrapped >= self.high else wrapped
        return float(np.clip(value, self.low, self.high))


PARAMETER_RANGES: Dict[str, ParamRange] = {
    'hue': ParamRange(0.0, 1.0, cyclic=True),
    'density': ParamRange(0.0, 1.0),
    'morph': ParamRange(0.0, 1.0),
    'chaos': ParamRange(0.0, 1.0),
    'noise_frequency': ParamRange(0.1, 8.0),
    'glitch': ParamRange(0.0, 1.0),
    'displacement_amplitude': ParamRange(0.0, 1.0),
    'chroma_shift': ParamRange(0.0, 0.5),
    'time_scale': ParamRange(0.0, 4.0),
    'beat_phase': ParamRange(0.0, 1.0, cyclic=True),
}

PARAMETER_NAMES: Tuple[str, ...] = tuple(PARAMETER_RANGES)

AUX_PREFIX = 'aux.'


def is_parameter_name(name: str) -> bool:
    return name in PARAMETER_RANGES


def is_aux_name(name: str) -> bool:
    return name.startswith(AUX_PREFIX) and len(name) > len(AUX_PREFIX)


def clamp_param(name: str, value: float) -> float:
    """
    Bring a value into the declared range of ``name``.

    Non-finite values collapse to the low end of the range (0 for every
    field in practice).
    """
    rng = PARAMETER_RANGES[name]
    if not math.isfinite(value):
        return rng.low
    return rng.apply(value)


# =============================================================================
# Parameter Vector
# =============================================================================

@dataclass
class ParameterVector:
    """
    The ten visual scalars shared by every surface.

    Instances produced by the engine are always in range; construct through
    ``from_dict`` or call ``clamped()`` when the values come from outside.
    """
    hue: float = 0.6                    # base hue, cyclic [0, 1)
    density: float = 0.5                # particle/mesh density [0, 1]
    morph: float = 1.0                  # shape morph factor [0, 1]
    chaos: float = 0.2                  # turbulence amplitude [0, 1]
    noise_frequency: float = 2.1        # domain noise frequency [0.1, 8]
    glitch: float = 0.1                 # glitch intensity [0, 1]
    displacement_amplitude: float = 0.2 # vertex displacement [0, 1]
    chroma_shift: float = 0.05          # RGB split amount [0, 0.5]
    time_scale: float = 1.0             # shader time multiplier [0, 4]
    beat_phase: float = 0.0             # clock phase, cyclic [0, 1)

    def clamped(self) -> 'ParameterVector':
        """Return a copy with every field brought into range."""
        return ParameterVector(**{
            f.name: clamp_param(f.name, float(getattr(self, f.name)))
            for f in fields(self)
        })

    def merged(self, partial: Dict[str, Any]) -> 'ParameterVector':
        """Return a copy with the known, finite fields of ``partial`` applied."""
        values = self.to_dict()
        for key, value in partial.items():
            if key not in PARAMETER_RANGES:
                continue
            try:
                value = float(value)
            except (TypeError, ValueError):
                continue
            if math.isfinite(value):
                values[key] = clamp_param(key, value)
        return ParameterVector(**values)

    def max_abs_diff(self, other: 'ParameterVector') -> float:
        """Largest per-field difference, cyclic fields measured the short way."""
        worst = 0.0
        for name, rng in PARAMETER_RANGES.items():
            diff = abs(getattr(self, name) - getattr(other, name))
            if rng.cyclic:
                diff = min(diff, (rng.high - rng.low) - diff)
            worst = max(worst, diff)
        return worst

    def to_dict(self) -> Dict[str, float]:
        return {name: getattr(self, name) for name in PARAMETER_NAMES}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> 'ParameterVector':
        """Create from dictionary. Unknown keys and bad values are ignored."""
        return cls().merged(d)


DEFAULT_HOME_PARAMS = ParameterVector()


# =============================================================================
# Random Home Generation
# =============================================================================

# Ranges the randomizer draws from - narrower than the declared ranges so a
# random home always looks deliberate
RANDOM_HOME_RANGES: Dict[str, Tuple[float, float]] = {
    'hue': (0.0, 1.0),
    'density': (0.2, 0.8),
    'morph': (0.5, 1.0),
    'chaos': (0.0, 0.8),
    'noise_frequency': (1.0, 4.0),
    'glitch': (0.0, 0.3),
    'displacement_amplitude': (0.1, 0.5),
    'chroma_shift': (0.0, 0.1),
    'time_scale': (0.5, 2.5),
    'beat_phase': (0.0, 1.0),
}


def randomize_home_params(rng: Optional[np.random.Generator] = None) -> ParameterVector:
    """Draw a fresh home vector."""
    if rng is None:
        rng = np.random.default_rng()
    values = {
        name: float(rng.uniform(low, high))
        for name, (low, high) in RANDOM_HOME_RANGES.items()
    }
    return ParameterVector(**values).clamped()


# =============================================================================
# Exports
# =============================================================================

__all__ = [
    'LayerType',
    'LAYERS',
    'LAYER_DENSITY_SCALE',
    'LAYER_CHAOS_SCALE',
    'ParamRange',
    'PARAMETER_RANGES',
    'PARAMETER_NAMES',
    'AUX_PREFIX',
    'is_parameter_name',
    'is_aux_name',
    'clamp_param',
    'ParameterVector',
    'DEFAULT_HOME_PARAMS',
    'RANDOM_HOME_RANGES',
    'randomize_home_params',
]
