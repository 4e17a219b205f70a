"""
Holoweb Configuration - Section Rules, Cascade Tables & Engine Tunables
=======================================================================

Three kinds of static configuration feed the engine:

    SectionDerivationRule  - how a section bends the home vector
    CascadeRule            - what a named trigger does to which parameter
    EngineConfig           - decay, idle and memory tunables

All of it is data, loaded once at construction. The only code allowed in
here is the optional custom curve on a relationship.

YAML layout (every key optional):

    engine:
      decay_time_constant_ms: 600
    home:
      hue: 0.6
    sections:
      ai-news: {hue_shift: 0.07, density_multiplier: 0.9}
    cascades:
      cardHoverTarget:
        - {parameter: morph, scope: layer, kind: linear, intensity: 0.28}
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Any, Optional

import yaml
from pydantic import ValidationError

from .params import ParameterVector, DEFAULT_HOME_PARAMS
from .relationships import Relationship, RelationshipKind


logger = logging.getLogger(__name__)


class ConfigurationError(ValueError):
    """Raised when a configuration file or table cannot be used."""


# =============================================================================
# Section Derivation Rules
# =============================================================================

@dataclass(frozen=True)
class SectionDerivationRule:
    """
    Static per-section offsets applied to the home vector.

        hue     = (home.hue + hue_shift) mod 1
        density = clamp(home.density × density_multiplier + density_add)
        morph   = clamp(home.morph × morph_multiplier + morph_add)
        chaos   = clamp(home.chaos × chaos_multiplier + chaos_add)
        glitch  = max(0, home.glitch + glitch_bias)

    The defaults are the identity rule.
    """
    hue_shift: float = 0.0
    density_multiplier: float = 1.0
    density_add: float = 0.0
    morph_multiplier: float = 1.0
    morph_add: float = 0.0
    chaos_multiplier: float = 1.0
    chaos_add: float = 0.0
    glitch_bias: float = 0.0
    noise_frequency_multiplier: float = 1.0
    time_scale_multiplier: float = 1.0

    def to_dict(self) -> Dict[str, float]:
        return {k: v for k, v in self.__dict__.items()}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> 'SectionDerivationRule':
        return cls(**{k: float(v) for k, v in d.items() if hasattr(cls, k)})


IDENTITY_RULE = SectionDerivationRule()

DEFAULT_SECTION_RULES: Dict[str, SectionDerivationRule] = {
    'home': SectionDerivationRule(glitch_bias=0.05),
    'ai-news': SectionDerivationRule(hue_shift=0.07, density_multiplier=0.9),
    'vibe-coding': SectionDerivationRule(morph_multiplier=1.2, chaos_multiplier=1.1),
    'info-theory': SectionDerivationRule(noise_frequency_multiplier=0.8),
    'philosophy': SectionDerivationRule(
        density_add=0.05,
        glitch_bias=-0.03,
        time_scale_multiplier=0.9,
    ),
}


# =============================================================================
# Cascade Rules
# =============================================================================

class ScopeKind(str, Enum):
    """Where a cascade's delta lands."""
    GLOBAL = 'global'       # every section, every layer
    SECTION = 'section'     # one section, every layer
    LAYER = 'layer'         # one layer (of one section, or of all sections)


@dataclass(frozen=True)
class CascadeRule:
    """
    One effect of a named trigger.

    ``section_id``/``layer`` pin the scope; when unset they are filled in from
    the trigger context at fire time.

    ``min_value``/``max_value`` bound an ``aux.`` channel after its deltas are
    summed. Parameter fields are bounded by their declared ranges instead.
    """
    trigger_name: str
    parameter_name: str
    relationship: Relationship = field(default_factory=Relationship)
    target_scope: ScopeKind = ScopeKind.LAYER
    section_id: Optional[str] = None
    layer: Optional[str] = None
    min_value: Optional[float] = None
    max_value: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            'parameter': self.parameter_name,
            'scope': self.target_scope.value,
        }
        data.update(self.relationship.to_dict())
        if self.section_id is not None:
            data['section_id'] = self.section_id
        if self.layer is not None:
            data['layer'] = self.layer
        if self.min_value is not None:
            data['min_value'] = self.min_value
        if self.max_value is not None:
            data['max_value'] = self.max_value
        return data


CascadeTable = Dict[str, List[CascadeRule]]


def _rule(trigger: str, parameter: str, kind: RelationshipKind, intensity: float,
          scope: ScopeKind = ScopeKind.LAYER, min_value: Optional[float] = None,
          max_value: Optional[float] = None) -> CascadeRule:
    return CascadeRule(
        trigger_name=trigger,
        parameter_name=parameter,
        relationship=Relationship(kind=kind, intensity=intensity),
        target_scope=scope,
        min_value=min_value,
        max_value=max_value,
    )


def default_cascade_table() -> CascadeTable:
    """The stock hover / focus / inversion / idle cascades."""
    linear = RelationshipKind.LINEAR
    exponential = RelationshipKind.EXPONENTIAL
    logarithmic = RelationshipKind.LOGARITHMIC

    return {
        'cardHoverTarget': [
            _rule('cardHoverTarget', 'morph', linear, 0.28),
            _rule('cardHoverTarget', 'density', linear, 0.18),
            _rule('cardHoverTarget', 'aux.otherCards.opacity', linear, -0.6, ScopeKind.SECTION,
                  min_value=0.15, max_value=1.0),
        ],
        'cardHoverSibling': [
            _rule('cardHoverSibling', 'density', linear, 0.2),
            _rule('cardHoverSibling', 'chaos', linear, 0.12),
        ],
        'cardFocus': [
            _rule('cardFocus', 'time_scale', linear, 0.35),
            _rule('cardFocus', 'displacement_amplitude', exponential, 0.12),
        ],
        'cardFocusRelease': [
            _rule('cardFocusRelease', 'time_scale', linear, 0.3),
            _rule('cardFocusRelease', 'displacement_amplitude', exponential, 0.2),
        ],
        'realityInversion': [
            _rule('realityInversion', 'hue', linear, 0.2, ScopeKind.SECTION),
            _rule('realityInversion', 'chaos', exponential, 0.25, ScopeKind.SECTION),
            _rule('realityInversion', 'beat_phase', linear, 0.5, ScopeKind.SECTION),
        ],
        # negative intensity: ln(m) < 0 for m < 1, so idle pushes morph/chaos up
        'idleFlux': [
            _rule('idleFlux', 'morph', logarithmic, -0.08),
            _rule('idleFlux', 'chaos', logarithmic, -0.05),
        ],
    }


# =============================================================================
# Engine Tunables
# =============================================================================

@dataclass
class EngineConfig:
    """Time constants and thresholds shared by the engine components."""
    decay_time_constant_ms: float = 600.0   # τ for exp(-dt/τ) delta decay
    prune_epsilon: float = 1e-4             # live deltas below this are dropped
    material_epsilon: float = 1e-4          # smallest change worth a revision
    tick_hz: float = 60.0                   # rate of the start()ed tick loop
    idle_threshold_ms: float = 8000.0       # quiet time before idleFlux
    idle_ramp_ms: float = 16000.0           # idle magnitude reaches 1 here
    memory_size: int = 32                   # consciousness event memory cap

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in self.__dict__.items() if not k.startswith('_')}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> 'EngineConfig':
        """Create from dictionary."""
        return cls(**{k: v for k, v in d.items() if hasattr(cls, k)})


# =============================================================================
# Complete Configuration
# =============================================================================

@dataclass
class HolowebConfig:
    """Everything the engine is constructed from."""
    engine: EngineConfig = field(default_factory=EngineConfig)
    home: ParameterVector = field(default_factory=lambda: DEFAULT_HOME_PARAMS.clamped())
    sections: Dict[str, SectionDerivationRule] = field(
        default_factory=lambda: dict(DEFAULT_SECTION_RULES)
    )
    cascades: CascadeTable = field(default_factory=default_cascade_table)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'engine': self.engine.to_dict(),
            'home': self.home.to_dict(),
            'sections': {k: v.to_dict() for k, v in self.sections.items()},
            'cascades': {
                trigger: [rule.to_dict() for rule in rules]
                for trigger, rules in self.cascades.items()
            },
        }

    def save(self, path: Path) -> None:
        """Save config as YAML. Custom curves are not serialized."""
        with open(path, 'w') as f:
            yaml.safe_dump(self.to_dict(), f, sort_keys=False)

    @classmethod
    def load(cls, path: Path) -> 'HolowebConfig':
        return load_config(path)


def get_default_config() -> HolowebConfig:
    return HolowebConfig()


def load_config(path: Optional[Path] = None) -> HolowebConfig:
    """
    Load configuration from YAML, falling back to the defaults for every
    section the file leaves out.

    Raises:
        ConfigurationError: unreadable file or a table that fails validation
    """
    from .schemas import HolowebConfigSchema, to_config

    if path is None:
        return get_default_config()

    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"Config file not found: {path}")

    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"{path}: top level must be a mapping")

    try:
        schema = HolowebConfigSchema.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"{path}: {e}") from e

    config = to_config(schema)
    logger.info(
        f"Loaded config from {path}: {len(config.sections)} sections, "
        f"{sum(len(r) for r in config.cascades.values())} cascade rules"
    )
    return config


# =============================================================================
# Exports
# =============================================================================

__all__ = [
    'ConfigurationError',
    'SectionDerivationRule',
    'IDENTITY_RULE',
    'DEFAULT_SECTION_RULES',
    'ScopeKind',
    'CascadeRule',
    'CascadeTable',
    'default_cascade_table',
    'EngineConfig',
    'HolowebConfig',
    'get_default_config',
    'load_config',
]
