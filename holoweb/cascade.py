"""
Holoweb Cascade Store - The Home Parameter Authority
====================================================

The cascade store owns the home vector and derives every section and layer
vector from it:

    home ──▶ SectionDerivationRule ──▶ layer scaling ──▶ + Σ deltas ──▶ clamp
                                                            ▲
    trigger ──▶ CascadeRule ──▶ Relationship ──▶ ScopedDelta┘
                                                   │
    step(dt) ──────────── exp(-dt/τ) decay ────────┘

Derivation is a pure function of (home, static rule, live deltas). Derived
vectors are never fed back into themselves, so cascades that target the
section they came from cannot loop.

Triggers apply immediately: the very next derive sees them. Decay happens
only in ``step``. All additive deltas for a field are summed first and the
field is clamped exactly once, last.

Per-section state:
    IDLE   - no live deltas apply to the section
    ACTIVE - at least one live delta applies
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Tuple, Union

import numpy as np

from .config import (
    CascadeRule,
    CascadeTable,
    EngineConfig,
    HolowebConfig,
    IDENTITY_RULE,
    DEFAULT_SECTION_RULES,
    ScopeKind,
    SectionDerivationRule,
    default_cascade_table,
)
from .consciousness import ConsciousnessEstimator
from .loop import TickLoop
from .observers import ChangeNotifier
from .params import (
    AUX_PREFIX,
    LAYERS,
    LAYER_CHAOS_SCALE,
    LAYER_DENSITY_SCALE,
    PARAMETER_NAMES,
    DEFAULT_HOME_PARAMS,
    ParameterVector,
    clamp_param,
    is_aux_name,
    is_parameter_name,
    randomize_home_params,
)
from .relationships import RelationshipEvaluator, sanitize
from .schemas import bound_problems, validate_cascade_table, validate_section_rules


logger = logging.getLogger(__name__)


# =============================================================================
# Scopes, Contexts & Deltas
# =============================================================================

@dataclass(frozen=True)
class CascadeScope:
    """
    Where a delta applies. ``None`` means "any".

        CascadeScope()                          global
        CascadeScope('ai-news')                 one section, every layer
        CascadeScope('ai-news', 'content')      one layer of one section
        CascadeScope(None, 'background')        one layer of every section
    """
    section_id: Optional[str] = None
    layer: Optional[str] = None

    @property
    def kind(self) -> ScopeKind:
        if self.layer is not None:
            return ScopeKind.LAYER
        if self.section_id is not None:
            return ScopeKind.SECTION
        return ScopeKind.GLOBAL

    def matches(self, section_id: Optional[str], layer: Optional[str] = None) -> bool:
        if self.section_id is not None and self.section_id != section_id:
            return False
        if self.layer is not None and self.layer != layer:
            return False
        return True

    def touches_section(self, section_id: str) -> bool:
        """True if the delta shows up in any layer of ``section_id``."""
        return self.section_id is None or self.section_id == section_id

    def key(self) -> str:
        if self.kind is ScopeKind.GLOBAL:
            return 'global'
        return f"{self.section_id or '*'}:{self.layer or '*'}"


GLOBAL_SCOPE = CascadeScope()


@dataclass
class CascadeContext:
    """Trigger-time context supplied by the interaction layer."""
    section_id: Optional[str] = None
    layer_type: Optional[str] = None
    target_id: Optional[str] = None
    target_index: Optional[int] = None
    magnitude: float = 1.0
    polarity: int = 1               # +1 or -1

    def source_value(self) -> float:
        sign = -1.0 if self.polarity < 0 else 1.0
        return sanitize(self.magnitude) * sign


@dataclass
class ScopedDelta:
    """An additive, decaying contribution to one parameter in one scope."""
    scope: CascadeScope
    parameter_name: str
    value: float
    created_at: float = field(default_factory=time.time)
    trigger_name: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            'scope': self.scope.key(),
            'parameter': self.parameter_name,
            'value': self.value,
            'created_at': self.created_at,
            'trigger': self.trigger_name,
        }


class SectionActivity(str, Enum):
    IDLE = 'idle'
    ACTIVE = 'active'


def resolve_scope(rule: CascadeRule, context: CascadeContext) -> CascadeScope:
    """Combine a rule's target scope with the trigger context."""
    if rule.target_scope is ScopeKind.GLOBAL:
        return GLOBAL_SCOPE
    section_id = rule.section_id or context.section_id
    if rule.target_scope is ScopeKind.SECTION:
        return CascadeScope(section_id=section_id)
    return CascadeScope(section_id=section_id, layer=rule.layer or context.layer_type)


# =============================================================================
# Snapshot
# =============================================================================

@dataclass(frozen=True)
class CascadeSnapshot:
    """Published derived state at one revision. Vectors are plain dicts."""
    revision: int
    home: Dict[str, float]
    sections: Dict[str, Dict[str, float]]
    layers: Dict[str, Dict[str, Dict[str, float]]]
    active_scopes: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'revision': self.revision,
            'home': dict(self.home),
            'sections': {k: dict(v) for k, v in self.sections.items()},
            'layers': {
                s: {layer: dict(v) for layer, v in per_layer.items()}
                for s, per_layer in self.layers.items()
            },
            'active_scopes': list(self.active_scopes),
        }


# =============================================================================
# Cascade Store
# =============================================================================

class CascadeStore(ChangeNotifier):
    """
    Home vector, section table and live cascade deltas.

    Created once per session. The host calls ``step(delta_ms)`` on a regular
    cadence (or calls ``start()`` to have a background TickLoop do it).

    Thread-safe: the store shares its estimator's RLock (``lock``), so a
    running TickLoop, host calls and listeners never interleave.
    """

    def __init__(
        self,
        cascades: Optional[CascadeTable] = None,
        sections: Optional[Mapping[str, SectionDerivationRule]] = None,
        home_params: Optional[Union[ParameterVector, Mapping[str, float]]] = None,
        engine_config: Optional[EngineConfig] = None,
        consciousness: Optional[ConsciousnessEstimator] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        super().__init__()
        self.config = engine_config or EngineConfig()
        self._clock = clock or time.time

        if home_params is None:
            self._home = DEFAULT_HOME_PARAMS.clamped()
        elif isinstance(home_params, ParameterVector):
            self._home = home_params.clamped()
        else:
            self._home = DEFAULT_HOME_PARAMS.merged(home_params)

        self._sections = self._load_sections(
            DEFAULT_SECTION_RULES if sections is None else sections
        )
        self._cascades = self._load_cascades(
            default_cascade_table() if cascades is None else cascades
        )
        self._aux_bounds = self._collect_aux_bounds(self._cascades)

        self.evaluator = RelationshipEvaluator()
        self.consciousness = consciousness or ConsciousnessEstimator(
            memory_size=self.config.memory_size,
            clock=self._clock,
        )
        # one lock per session: store, estimator and coordinator share it
        self._lock = self.consciousness.lock

        self._deltas: Dict[Tuple[CascadeScope, str], ScopedDelta] = {}
        self._extra_sections: Set[str] = set()

        self._published_sections: Dict[str, ParameterVector] = {}
        self._published_layers: Dict[str, Dict[str, ParameterVector]] = {}
        self._republish()

        self._loop: Optional[TickLoop] = None
        self._disposed = False

    @classmethod
    def from_config(cls, config: HolowebConfig, **kwargs) -> 'CascadeStore':
        return cls(
            cascades=config.cascades,
            sections=config.sections,
            home_params=config.home,
            engine_config=config.engine,
            **kwargs,
        )

    @staticmethod
    def _load_sections(rules: Mapping[str, SectionDerivationRule]) -> Dict[str, SectionDerivationRule]:
        """Copy the section table, dropping rules that hold non-finite or non-numeric values."""
        loaded: Dict[str, SectionDerivationRule] = {}
        for section_id, rule in rules.items():
            problems = validate_section_rules({section_id: rule})
            if problems:
                for problem in problems:
                    logger.warning(f"Section table: {problem}")
                logger.warning(f"Section '{section_id}' falls back to the identity rule")
                continue
            loaded[section_id] = rule
        return loaded

    @staticmethod
    def _collect_aux_bounds(cascades: Dict[str, List[CascadeRule]]) -> Dict[str, Tuple[float, float]]:
        """Tightest (low, high) declared for each aux channel across all rules."""
        bounds: Dict[str, Tuple[float, float]] = {}
        for rules in cascades.values():
            for rule in rules:
                if not is_aux_name(rule.parameter_name):
                    continue
                if bound_problems(rule.parameter_name, rule.min_value, rule.max_value):
                    continue
                low, high = bounds.get(rule.parameter_name, (-math.inf, math.inf))
                if rule.min_value is not None:
                    low = max(low, float(rule.min_value))
                if rule.max_value is not None:
                    high = min(high, float(rule.max_value))
                if low > high:
                    logger.warning(f"Conflicting bounds on '{rule.parameter_name}' ignored from trigger '{rule.trigger_name}'")
                    continue
                bounds[rule.parameter_name] = (low, high)
        return {name: b for name, b in bounds.items() if b != (-math.inf, math.inf)}

    @staticmethod
    def _load_cascades(table: CascadeTable) -> Dict[str, List[CascadeRule]]:
        """Copy the rule table, dropping rules that name unknown parameters."""
        for problem in validate_cascade_table(table):
            logger.warning(f"Cascade table: {problem}")

        loaded: Dict[str, List[CascadeRule]] = {}
        for trigger, rules in table.items():
            usable = [
                r for r in rules
                if is_parameter_name(r.parameter_name) or is_aux_name(r.parameter_name)
            ]
            if usable:
                loaded[trigger] = usable
        return loaded

    # -------------------------------------------------------------------------
    # Home parameters
    # -------------------------------------------------------------------------

    @property
    def home_params(self) -> ParameterVector:
        with self._lock:
            return ParameterVector(**self._home.to_dict())

    def update_home_params(
        self,
        partial: Optional[Union[ParameterVector, Mapping[str, Any]]] = None,
        **kwargs: Any,
    ) -> bool:
        """
        Merge fields into the home vector and notify immediately.

        Unknown names and non-finite values are ignored; the rest are clamped
        to their ranges.

        Returns:
            True if the home vector changed
        """
        updates: Dict[str, Any] = {}
        if isinstance(partial, ParameterVector):
            updates.update(partial.to_dict())
        elif partial:
            updates.update(partial)
        updates.update(kwargs)

        unknown = [k for k in updates if not is_parameter_name(k)]
        if unknown:
            logger.warning(f"Ignoring unknown home parameters: {', '.join(sorted(unknown))}")

        with self._lock:
            merged = self._home.merged(updates)
            if merged == self._home:
                return False

            self._home = merged
            self._republish()
            self._emit()
            return True

    def randomize_home(self, rng: Optional[np.random.Generator] = None) -> ParameterVector:
        """Replace the home vector with a random one."""
        fresh = randomize_home_params(rng)
        with self._lock:
            self.update_home_params(fresh)
            return self.home_params

    # -------------------------------------------------------------------------
    # Derivation
    # -------------------------------------------------------------------------

    def section_ids(self) -> List[str]:
        """Every section with a rule, plus any that live cascades touch."""
        with self._lock:
            known = list(self._sections)
            for section_id in sorted(self._extra_sections):
                if section_id not in self._sections:
                    known.append(section_id)
            return known

    def get_section_rule(self, section_id: str) -> SectionDerivationRule:
        return self._sections.get(section_id, IDENTITY_RULE)

    def derive_section_params(self, section_id: str) -> ParameterVector:
        """Section vector from (home, section rule, live section/global deltas)."""
        with self._lock:
            return self._derive(section_id, None)

    def derive_layer_params(self, section_id: str, layer: str) -> ParameterVector:
        """Layer vector: section base with per-layer scaling and layer deltas."""
        with self._lock:
            return self._derive(section_id, layer)

    def _derive(self, section_id: str, layer: Optional[str]) -> ParameterVector:
        rule = self.get_section_rule(section_id)
        home = self._home

        density = home.density * rule.density_multiplier + rule.density_add
        chaos = home.chaos * rule.chaos_multiplier + rule.chaos_add
        if layer is not None:
            density *= LAYER_DENSITY_SCALE.get(layer, 1.0)
            chaos *= LAYER_CHAOS_SCALE.get(layer, 1.0)

        raw = {
            'hue': home.hue + rule.hue_shift,
            'density': density,
            'morph': home.morph * rule.morph_multiplier + rule.morph_add,
            'chaos': chaos,
            'noise_frequency': home.noise_frequency * rule.noise_frequency_multiplier,
            'glitch': home.glitch + rule.glitch_bias,
            'displacement_amplitude': home.displacement_amplitude,
            'chroma_shift': home.chroma_shift,
            'time_scale': home.time_scale * rule.time_scale_multiplier,
            'beat_phase': home.beat_phase,
        }

        sums = self._delta_sums(section_id, layer)
        return ParameterVector(**{
            name: clamp_param(name, raw[name] + sums.get(name, 0.0))
            for name in PARAMETER_NAMES
        })

    def _delta_sums(self, section_id: str, layer: Optional[str]) -> Dict[str, float]:
        sums: Dict[str, float] = {}
        for delta in self._deltas.values():
            if delta.parameter_name.startswith(AUX_PREFIX):
                continue
            if delta.scope.matches(section_id, layer):
                sums[delta.parameter_name] = sums.get(delta.parameter_name, 0.0) + delta.value
        return sums

    def get_aux_value(
        self,
        name: str,
        base: float = 0.0,
        section_id: Optional[str] = None,
        layer: Optional[str] = None,
    ) -> float:
        """
        Base plus every live delta on an ``aux.`` channel visible from the
        given scope, held inside the channel's declared min/max.
        """
        key = name if name.startswith(AUX_PREFIX) else AUX_PREFIX + name
        total = sanitize(base)
        with self._lock:
            for delta in self._deltas.values():
                if delta.parameter_name == key and delta.scope.matches(section_id, layer):
                    total += delta.value
            bounds = self._aux_bounds.get(key)

        total = sanitize(total)
        if bounds is not None:
            total = float(np.clip(total, bounds[0], bounds[1]))
        return total

    def get_aux_bounds(self, name: str) -> Optional[Tuple[float, float]]:
        key = name if name.startswith(AUX_PREFIX) else AUX_PREFIX + name
        return self._aux_bounds.get(key)

    # -------------------------------------------------------------------------
    # Cascades
    # -------------------------------------------------------------------------

    def trigger_parameter_cascade(
        self,
        trigger_name: str,
        context: Optional[CascadeContext] = None,
    ) -> int:
        """
        Fire every rule registered for ``trigger_name``.

        Each rule's delta is written (or added to the live delta with the same
        scope and parameter) synchronously; listeners are notified once.

        Returns:
            Number of deltas written or merged
        """
        rules = self._cascades.get(trigger_name)
        if not rules:
            logger.debug(f"No cascades registered for trigger '{trigger_name}'")
            return 0

        context = context or CascadeContext()
        source = context.source_value()
        now = self._clock()
        written = 0

        with self._lock:
            for rule in rules:
                value = self.evaluator.apply(source, rule.relationship)
                if value == 0.0:
                    continue

                scope = resolve_scope(rule, context)
                key = (scope, rule.parameter_name)
                existing = self._deltas.get(key)
                if existing is not None:
                    existing.value = sanitize(existing.value + value)
                    existing.trigger_name = trigger_name
                else:
                    self._deltas[key] = ScopedDelta(
                        scope=scope,
                        parameter_name=rule.parameter_name,
                        value=value,
                        created_at=now,
                        trigger_name=trigger_name,
                    )
                if scope.section_id is not None:
                    self._extra_sections.add(scope.section_id)
                written += 1

            if written:
                logger.debug(
                    f"Cascade '{trigger_name}' wrote {written} deltas "
                    f"(source={source:+.3f}, section={context.section_id}, layer={context.layer_type})"
                )
                self._republish()
                self._emit()
        return written

    def clear_cascades(self, section_id: Optional[str] = None) -> int:
        """Drop live deltas: all of them, or those pinned to one section."""
        with self._lock:
            if section_id is None:
                doomed = list(self._deltas)
            else:
                doomed = [k for k, d in self._deltas.items() if d.scope.section_id == section_id]

            for key in doomed:
                del self._deltas[key]

            if doomed:
                self._forget_quiet_sections()
                self._republish()
                self._emit()
            return len(doomed)

    def _forget_quiet_sections(self) -> None:
        """Stop publishing rule-less sections that no live delta is pinned to."""
        pinned = {d.scope.section_id for d in self._deltas.values()}
        self._extra_sections &= pinned

    def get_active_deltas(self) -> List[ScopedDelta]:
        """Copies of every live delta."""
        with self._lock:
            return [
                ScopedDelta(d.scope, d.parameter_name, d.value, d.created_at, d.trigger_name)
                for d in self._deltas.values()
            ]

    def section_activity(self, section_id: str) -> SectionActivity:
        with self._lock:
            for delta in self._deltas.values():
                if delta.scope.touches_section(section_id):
                    return SectionActivity.ACTIVE
            return SectionActivity.IDLE

    def triggers(self) -> List[str]:
        return list(self._cascades)

    # -------------------------------------------------------------------------
    # Tick
    # -------------------------------------------------------------------------

    def step(self, delta_ms: float) -> bool:
        """
        Advance decay and the consciousness integration by ``delta_ms``.

        Returns:
            True if the published derived state changed (revision bumped)
        """
        if not math.isfinite(delta_ms) or delta_ms <= 0:
            return False

        with self._lock:
            pruned = self._decay(delta_ms)

            for section_id, layer in self.consciousness.registered_elements():
                self.consciousness.observe(section_id, layer, self._derive(section_id, layer))

            changed = self._republish(force=pruned > 0)
            self.consciousness.step(delta_ms / 1000.0)

            if changed:
                self._emit()
            return changed

    def _decay(self, delta_ms: float) -> int:
        if not self._deltas:
            return 0

        tau = max(self.config.decay_time_constant_ms, 1e-6)
        factor = math.exp(-delta_ms / tau)
        pruned = 0
        for key, delta in list(self._deltas.items()):
            delta.value *= factor
            if abs(delta.value) < self.config.prune_epsilon:
                del self._deltas[key]
                pruned += 1

        if pruned:
            self._forget_quiet_sections()
            logger.debug(f"Pruned {pruned} decayed deltas, {len(self._deltas)} live")
        return pruned

    def _republish(self, force: bool = True) -> bool:
        """
        Recompute every known section/layer vector and publish it if anything
        moved by more than the material epsilon (or ``force``).
        """
        sections: Dict[str, ParameterVector] = {}
        layers: Dict[str, Dict[str, ParameterVector]] = {}
        for section_id in self.section_ids():
            sections[section_id] = self._derive(section_id, None)
            layers[section_id] = {
                layer: self._derive(section_id, layer) for layer in LAYERS
            }

        if not force and not self._differs(sections, layers):
            return False

        self._published_sections = sections
        self._published_layers = layers
        return True

    def _differs(
        self,
        sections: Dict[str, ParameterVector],
        layers: Dict[str, Dict[str, ParameterVector]],
    ) -> bool:
        eps = self.config.material_epsilon
        if sections.keys() != self._published_sections.keys():
            return True
        for section_id, vector in sections.items():
            if vector.max_abs_diff(self._published_sections[section_id]) > eps:
                return True
            published = self._published_layers.get(section_id, {})
            for layer, layer_vector in layers[section_id].items():
                old = published.get(layer)
                if old is None or layer_vector.max_abs_diff(old) > eps:
                    return True
        return False

    # -------------------------------------------------------------------------
    # Read side
    # -------------------------------------------------------------------------

    def get_snapshot(self) -> CascadeSnapshot:
        with self._lock:
            return CascadeSnapshot(
                revision=self._revision,
                home=self._home.to_dict(),
                sections={k: v.to_dict() for k, v in self._published_sections.items()},
                layers={
                    s: {layer: v.to_dict() for layer, v in per_layer.items()}
                    for s, per_layer in self._published_layers.items()
                },
                active_scopes=tuple(sorted({d.scope.key() for d in self._deltas.values()})),
            )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._loop is not None and self._loop.running

    def start(self) -> None:
        """Drive ``step`` from a background TickLoop. No-op if running."""
        if self._disposed or self.running:
            return
        self._loop = TickLoop(self.step, target_hz=self.config.tick_hz, name="cascade")
        self._loop.start()

    def stop(self) -> None:
        """Stop the background TickLoop. No-op if stopped."""
        if self._loop is None:
            return
        self._loop.stop()
        self._loop = None

    def dispose(self) -> None:
        """Stop, drop deltas and listeners, dispose the estimator."""
        if self._disposed:
            return
        self.stop()
        with self._lock:
            self._deltas.clear()
            self._extra_sections.clear()
            self.clear_subscribers()
            self._disposed = True
        self.consciousness.dispose()
        logger.info("CascadeStore disposed")


# =============================================================================
# Exports
# =============================================================================

__all__ = [
    'CascadeScope',
    'GLOBAL_SCOPE',
    'CascadeContext',
    'ScopedDelta',
    'SectionActivity',
    'resolve_scope',
    'CascadeSnapshot',
    'CascadeStore',
]
