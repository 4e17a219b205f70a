"""
Holoweb Consciousness - Smoothed Attention Summary
==================================================

Every registered visual element (keyed ``section:layer``) carries an
attention weight in [0, 1]. The estimator integrates the mean attention into
four smoothed scalars:

    awareness   → 0.4 + 0.6 × mean          (rate 2.2 /s)
    emergence   → 0.3 + 0.7 × mean          (rate 1.5 /s)
    coherence   → 0.85 + 0.2 × (mean - 0.5) (rate 1.1 /s)
    flux       += (emergence - 0.5) × dt × 0.3

Each of the first three moves toward its target by the factor
1 - exp(-rate × dt), so it approaches monotonically and never overshoots.
Interactions nudge awareness and flux directly.

A short textual memory (newest first, capped) records registrations and
interactions.
"""

from __future__ import annotations

import logging
import math
import time
from collections import deque
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Tuple

import numpy as np

from .observers import ChangeNotifier
from .params import ParameterVector


logger = logging.getLogger(__name__)


SEED_ATTENTION = 0.5
EMPTY_MEAN_ATTENTION = 0.5
CHANGE_EPSILON = 1e-4

AWARENESS_RATE = 2.2
EMERGENCE_RATE = 1.5
COHERENCE_RATE = 1.1
FLUX_GAIN = 0.3

INTERACTION_AWARENESS_NUDGE = 0.05
INTERACTION_FLUX_NUDGE = 0.08


def clamp01(value: float) -> float:
    if not math.isfinite(value):
        return 0.0
    return float(np.clip(value, 0.0, 1.0))


def compose_key(section_id: str, layer: str) -> str:
    return f"{section_id}:{layer}"


def attention_from_params(params: Any) -> float:
    """Busier surfaces command more attention."""
    if isinstance(params, ParameterVector):
        density, chaos = params.density, params.chaos
    else:
        density, chaos = params.get('density', 0.0), params.get('chaos', 0.0)
    return clamp01(0.35 + 0.45 * density + 0.2 * chaos)


# =============================================================================
# Snapshot
# =============================================================================

@dataclass(frozen=True)
class ConsciousnessSnapshot:
    """Immutable view of the estimator at one revision."""
    awareness: float
    emergence: float
    coherence: float
    flux: float
    attention: Mapping[str, float] = field(default_factory=dict)
    memory: Tuple[str, ...] = ()
    revision: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'awareness': self.awareness,
            'emergence': self.emergence,
            'coherence': self.coherence,
            'flux': self.flux,
            'attention': dict(self.attention),
            'memory': list(self.memory),
            'revision': self.revision,
        }


@dataclass
class RegisteredElement:
    """One attention key and the element handles that share it."""
    key: str
    section_id: str
    layer: str
    elements: List[Any] = field(default_factory=list)   # opaque, owned by the host


# =============================================================================
# Estimator
# =============================================================================

class ConsciousnessEstimator(ChangeNotifier):
    """
    Attention map plus the four smoothed consciousness scalars.

    Created once per session; ``dispose()`` ends it.
    """

    def __init__(
        self,
        memory_size: int = 32,
        clock: Optional[Callable[[], float]] = None,
    ):
        super().__init__()
        self.memory_size = max(1, int(memory_size))
        self._clock = clock or time.time

        self.awareness = 0.5
        self.emergence = 0.2
        self.coherence = 1.0
        self.flux = 0.25

        self._attention: Dict[str, float] = {}
        self._registry: Dict[str, RegisteredElement] = {}
        self._memory: Deque[str] = deque(maxlen=self.memory_size)

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def register_element(self, section_id: str, layer: str, element_ref: Any = None) -> Callable[[], None]:
        """
        Add an element to the attention map.

        Several elements may share one ``section:layer`` key; the key lives
        until the last of them unregisters.

        Returns:
            An idempotent unregister function
        """
        key = compose_key(section_id, layer)
        with self._lock:
            entry = self._registry.get(key)
            if entry is None:
                entry = RegisteredElement(key=key, section_id=section_id, layer=layer)
                self._registry[key] = entry
                self._attention[key] = SEED_ATTENTION
            entry.elements.append(element_ref)
            self._remember(f"register:{key}")
            self._emit()

        done = False

        def unregister() -> None:
            nonlocal done
            with self._lock:
                if done:
                    return
                done = True
                self._release(key, element_ref)

        return unregister

    def _release(self, key: str, element_ref: Any) -> None:
        entry = self._registry.get(key)
        if entry is None:
            return
        for i, existing in enumerate(entry.elements):
            if existing is element_ref:
                del entry.elements[i]
                break
        if not entry.elements:
            del self._registry[key]
            self._attention.pop(key, None)
        self._remember(f"unregister:{key}")
        self._emit()

    def is_registered(self, section_id: str, layer: str) -> bool:
        with self._lock:
            return compose_key(section_id, layer) in self._registry

    def registered_elements(self) -> List[Tuple[str, str]]:
        """(section_id, layer) for every live attention key."""
        with self._lock:
            return [(e.section_id, e.layer) for e in self._registry.values()]

    # -------------------------------------------------------------------------
    # Inputs
    # -------------------------------------------------------------------------

    def observe(self, section_id: str, layer: str, params: Any) -> None:
        """Recompute one key's attention from its derived parameters."""
        key = compose_key(section_id, layer)
        with self._lock:
            if key not in self._registry:
                return
            self._attention[key] = attention_from_params(params)

    def signal_interaction(self, event_name: str) -> None:
        timestamp = int(self._clock() * 1000)
        with self._lock:
            self._remember(f"interaction:{event_name}:{timestamp}")
            self.awareness = clamp01(self.awareness + INTERACTION_AWARENESS_NUDGE)
            self.flux = clamp01(self.flux + INTERACTION_FLUX_NUDGE)
            self._emit()

    # -------------------------------------------------------------------------
    # Integration
    # -------------------------------------------------------------------------

    def mean_attention(self) -> float:
        with self._lock:
            if not self._attention:
                return EMPTY_MEAN_ATTENTION
            return float(np.mean(list(self._attention.values())))

    def step(self, delta_seconds: float) -> bool:
        """
        Advance the smoothing by ``delta_seconds``.

        Returns:
            True if any scalar moved by more than CHANGE_EPSILON (and
            listeners were notified)
        """
        if not math.isfinite(delta_seconds) or delta_seconds <= 0:
            return False

        with self._lock:
            mean = self.mean_attention()
            awareness_target = clamp01(0.4 + 0.6 * mean)
            emergence_target = clamp01(0.3 + 0.7 * mean)
            coherence_target = clamp01(0.85 + 0.2 * (mean - 0.5))

            previous = (self.awareness, self.emergence, self.coherence, self.flux)

            self.awareness += (awareness_target - self.awareness) * _lerp_factor(AWARENESS_RATE, delta_seconds)
            self.emergence += (emergence_target - self.emergence) * _lerp_factor(EMERGENCE_RATE, delta_seconds)
            self.coherence += (coherence_target - self.coherence) * _lerp_factor(COHERENCE_RATE, delta_seconds)
            self.flux = clamp01(self.flux + (self.emergence - 0.5) * delta_seconds * FLUX_GAIN)

            current = (self.awareness, self.emergence, self.coherence, self.flux)
            if any(abs(c - p) > CHANGE_EPSILON for c, p in zip(current, previous)):
                self._emit()
                return True
            return False

    # -------------------------------------------------------------------------
    # Read side
    # -------------------------------------------------------------------------

    def get_snapshot(self) -> ConsciousnessSnapshot:
        with self._lock:
            return ConsciousnessSnapshot(
                awareness=self.awareness,
                emergence=self.emergence,
                coherence=self.coherence,
                flux=self.flux,
                attention=MappingProxyType(dict(self._attention)),
                memory=tuple(self._memory),
                revision=self._revision,
            )

    def get_attention(self, section_id: str, layer: str) -> Optional[float]:
        with self._lock:
            return self._attention.get(compose_key(section_id, layer))

    def dispose(self) -> None:
        """Drop every registration and listener."""
        with self._lock:
            self._registry.clear()
            self._attention.clear()
            self.clear_subscribers()
        logger.info("ConsciousnessEstimator disposed")

    def _remember(self, entry: str) -> None:
        # deque(maxlen) drops from the right when appending left
        self._memory.appendleft(entry)


def _lerp_factor(rate: float, delta_seconds: float) -> float:
    return 1.0 - math.exp(-rate * delta_seconds)


__all__ = [
    'ConsciousnessSnapshot',
    'ConsciousnessEstimator',
    'RegisteredElement',
    'attention_from_params',
    'compose_key',
    'clamp01',
]
