"""Validation schemas for externally supplied holoweb tables.

Pydantic models for YAML configuration, plus lightweight checks for tables
built in code (where custom curves are allowed).
"""

from __future__ import annotations

import math
from typing import Optional, List, Dict

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .config import (
    CascadeRule,
    CascadeTable,
    EngineConfig,
    HolowebConfig,
    ScopeKind,
    SectionDerivationRule,
    DEFAULT_SECTION_RULES,
    default_cascade_table,
)
from .params import LAYERS, DEFAULT_HOME_PARAMS, is_parameter_name, is_aux_name
from .relationships import Relationship, RelationshipKind


def _require_finite(value: float) -> float:
    if not math.isfinite(value):
        raise ValueError("must be finite")
    return value


def _is_finite_number(value: object) -> bool:
    return isinstance(value, (int, float)) and math.isfinite(value)


def bound_problems(parameter: str, min_value: Optional[float], max_value: Optional[float]) -> List[str]:
    """Problems with a rule's optional aux-channel bounds."""
    if min_value is None and max_value is None:
        return []
    if not is_aux_name(parameter):
        return [f"min/max bounds only apply to aux channels, not '{parameter}'"]

    problems: List[str] = []
    for label, bound in (('min_value', min_value), ('max_value', max_value)):
        if bound is not None and not _is_finite_number(bound):
            problems.append(f"{label} must be finite")
    if not problems and min_value is not None and max_value is not None and min_value > max_value:
        problems.append(f"min_value {min_value} exceeds max_value {max_value}")
    return problems


class EngineSchema(BaseModel):
    """Engine tunables as they appear in a config file."""

    model_config = ConfigDict(extra="forbid")

    decay_time_constant_ms: float = Field(600.0, gt=0)
    prune_epsilon: float = Field(1e-4, gt=0)
    material_epsilon: float = Field(1e-4, gt=0)
    tick_hz: float = Field(60.0, gt=0, le=1000)
    idle_threshold_ms: float = Field(8000.0, ge=1000)
    idle_ramp_ms: float = Field(16000.0, gt=0)
    memory_size: int = Field(32, ge=1)


class SectionRuleSchema(BaseModel):
    """One section's derivation offsets."""

    model_config = ConfigDict(extra="forbid")

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

    @field_validator("*")
    @classmethod
    def _finite(cls, v: float) -> float:
        return _require_finite(v)


class CascadeRuleSchema(BaseModel):
    """A cascade rule as written in YAML.

    Example:
        {parameter: density, scope: layer, kind: inverse, intensity: 0.2}
    """

    model_config = ConfigDict(extra="forbid")

    parameter: str
    scope: ScopeKind = ScopeKind.LAYER
    kind: RelationshipKind = RelationshipKind.LINEAR
    intensity: float = 1.0
    section_id: Optional[str] = None
    layer: Optional[str] = None
    min_value: Optional[float] = None       # aux channels only
    max_value: Optional[float] = None

    @field_validator("parameter")
    @classmethod
    def _known_parameter(cls, v: str) -> str:
        if not (is_parameter_name(v) or is_aux_name(v)):
            raise ValueError(f"unknown parameter '{v}'")
        return v

    @field_validator("kind")
    @classmethod
    def _no_custom(cls, v: RelationshipKind) -> RelationshipKind:
        # curves are code; they can only be supplied programmatically
        if v is RelationshipKind.CUSTOM:
            raise ValueError("custom relationships cannot be loaded from a file")
        return v

    @field_validator("intensity")
    @classmethod
    def _finite_intensity(cls, v: float) -> float:
        return _require_finite(v)

    @field_validator("layer")
    @classmethod
    def _known_layer(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v not in LAYERS:
            raise ValueError(f"unknown layer '{v}'")
        return v

    @model_validator(mode="after")
    def _usable_bounds(self) -> "CascadeRuleSchema":
        problems = bound_problems(self.parameter, self.min_value, self.max_value)
        if problems:
            raise ValueError("; ".join(problems))
        return self

    def to_rule(self, trigger: str) -> CascadeRule:
        return CascadeRule(
            trigger_name=trigger,
            parameter_name=self.parameter,
            relationship=Relationship(kind=self.kind, intensity=self.intensity),
            target_scope=self.scope,
            section_id=self.section_id,
            layer=self.layer,
            min_value=self.min_value,
            max_value=self.max_value,
        )


class HolowebConfigSchema(BaseModel):
    """Top-level config document."""

    model_config = ConfigDict(extra="forbid")

    engine: EngineSchema = Field(default_factory=EngineSchema)
    home: Dict[str, float] = Field(default_factory=dict)
    sections: Dict[str, SectionRuleSchema] = Field(default_factory=dict)
    cascades: Dict[str, List[CascadeRuleSchema]] = Field(default_factory=dict)

    @field_validator("home")
    @classmethod
    def _known_home_fields(cls, v: Dict[str, float]) -> Dict[str, float]:
        for name, value in v.items():
            if not is_parameter_name(name):
                raise ValueError(f"unknown home parameter '{name}'")
            _require_finite(value)
        return v


def to_config(schema: HolowebConfigSchema) -> HolowebConfig:
    """Overlay a validated document on the defaults.

    File sections replace default sections of the same id; file triggers
    replace the default rule list for that trigger.
    """
    sections = dict(DEFAULT_SECTION_RULES)
    for section_id, rule in schema.sections.items():
        sections[section_id] = SectionDerivationRule.from_dict(rule.model_dump())

    cascades = default_cascade_table()
    for trigger, rules in schema.cascades.items():
        cascades[trigger] = [r.to_rule(trigger) for r in rules]

    return HolowebConfig(
        engine=EngineConfig.from_dict(schema.engine.model_dump()),
        home=DEFAULT_HOME_PARAMS.merged(schema.home),
        sections=sections,
        cascades=cascades,
    )


# =============================================================================
# In-code table checks
# =============================================================================

def validate_cascade_table(table: CascadeTable) -> List[str]:
    """Return a list of problems; empty means the table is usable as-is."""
    problems: List[str] = []
    for trigger, rules in table.items():
        for i, rule in enumerate(rules):
            where = f"{trigger}[{i}]"
            if rule.trigger_name != trigger:
                problems.append(f"{where}: rule names trigger '{rule.trigger_name}'")
            if not (is_parameter_name(rule.parameter_name) or is_aux_name(rule.parameter_name)):
                problems.append(f"{where}: unknown parameter '{rule.parameter_name}'")
            intensity = rule.relationship.intensity
            if not _is_finite_number(intensity):
                problems.append(f"{where}: intensity must be finite")
            if rule.relationship.kind is RelationshipKind.CUSTOM and rule.relationship.curve is None:
                problems.append(f"{where}: custom relationship without a curve")
            if rule.layer is not None and rule.layer not in LAYERS:
                problems.append(f"{where}: unknown layer '{rule.layer}'")
            for problem in bound_problems(rule.parameter_name, rule.min_value, rule.max_value):
                problems.append(f"{where}: {problem}")
    return problems


def validate_section_rules(rules: Dict[str, SectionDerivationRule]) -> List[str]:
    """Return a list of problems with a section table."""
    problems: List[str] = []
    for section_id, rule in rules.items():
        for name, value in rule.to_dict().items():
            if not _is_finite_number(value):
                problems.append(f"{section_id}.{name}: must be a finite number")
    return problems


__all__ = [
    "EngineSchema",
    "SectionRuleSchema",
    "CascadeRuleSchema",
    "HolowebConfigSchema",
    "to_config",
    "bound_problems",
    "validate_cascade_table",
    "validate_section_rules",
]
