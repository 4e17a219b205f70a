"""
Holoweb Interaction Coordinator - UI Events to Cascade Triggers
===============================================================

Translates discrete interaction events on registered visual elements into
named cascade triggers with magnitude and polarity:

    hover start  → cardHoverTarget (+1, 1)   cardHoverSibling (-1, m)
    hover end    → cardHoverTarget (-1, 1)   cardHoverSibling (+1, 1)
    focus / blur → cardFocus (+1)            cardFocusRelease (-1)
    click        → realityInversion (+1)
    quiet        → idleFlux on the background layer

Oppose & snap: the hovered element intensifies while its layer siblings get
an inverse compensation of magnitude m = max(0.2, 1 - 0.1 × total).

Events on unknown element ids are silently ignored: registration races are
normal in a UI.

Idle detection runs on tick time, not wall time: ``tick(delta_ms)`` advances
the coordinator's clock and fires at most one idleFlux per threshold window.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from .cascade import CascadeContext, CascadeStore
from .loop import TickLoop
from .params import LayerType


logger = logging.getLogger(__name__)


DEFAULT_IDLE_THRESHOLD_MS = 8000.0
MIN_IDLE_THRESHOLD_MS = 1000.0
SIBLING_MAGNITUDE_FLOOR = 0.2
SIBLING_MAGNITUDE_STEP = 0.1

# Trigger names
HOVER_TARGET = 'cardHoverTarget'
HOVER_SIBLING = 'cardHoverSibling'
FOCUS = 'cardFocus'
FOCUS_RELEASE = 'cardFocusRelease'
REALITY_INVERSION = 'realityInversion'
IDLE_FLUX = 'idleFlux'


@dataclass
class VisualizerRegistration:
    """An addressable visual element. ``element_ref`` is owned by the host."""
    id: str
    section_id: str
    layer: str = LayerType.CONTENT.value
    element_ref: Any = None


@dataclass
class HoverMeta:
    index: Optional[int] = None
    total: Optional[int] = None


def sibling_magnitude(total: Optional[int]) -> float:
    """Oppose & snap compensation for the siblings of a hovered element."""
    count = 1 if total is None else total
    return max(SIBLING_MAGNITUDE_FLOOR, 1.0 - SIBLING_MAGNITUDE_STEP * count)


class InteractionCoordinator:
    """
    Registration table plus event handlers feeding a CascadeStore.

    Signals for the consciousness estimator go to ``store.consciousness``.
    Handlers and ``tick`` run under the store's lock, so the idle TickLoop
    and host events are serialized with the store's own tick.
    """

    def __init__(
        self,
        store: CascadeStore,
        idle_threshold_ms: Optional[float] = None,
        idle_ramp_ms: Optional[float] = None,
    ):
        self.store = store
        self.consciousness = store.consciousness
        self._lock = store.lock

        self._registrations: Dict[str, VisualizerRegistration] = {}
        self._cleanups: Dict[str, Callable[[], None]] = {}

        self._idle_threshold_ms = DEFAULT_IDLE_THRESHOLD_MS
        self.set_idle_threshold(
            store.config.idle_threshold_ms if idle_threshold_ms is None else idle_threshold_ms
        )
        self.idle_ramp_ms = store.config.idle_ramp_ms if idle_ramp_ms is None else idle_ramp_ms

        self._clock_ms = 0.0
        self._last_activity_ms = 0.0
        self._idle_fires = 0

        self._loop: Optional[TickLoop] = None
        self._disposed = False

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def register_visualizer(self, registration: VisualizerRegistration) -> Callable[[], None]:
        """
        Register an element and seed its attention entry.

        Re-registering an id replaces the previous registration.

        Returns:
            An idempotent unregister function
        """
        with self._lock:
            if registration.id in self._registrations:
                self._remove(registration.id)

            self._registrations[registration.id] = registration
            self._cleanups[registration.id] = self.consciousness.register_element(
                registration.section_id,
                registration.layer,
                registration.element_ref,
            )
        logger.debug(
            f"Registered visualizer '{registration.id}' "
            f"({registration.section_id}:{registration.layer})"
        )

        def unregister() -> None:
            # only remove the registration this call created
            with self._lock:
                if self._registrations.get(registration.id) is registration:
                    self._remove(registration.id)

        return unregister

    def _remove(self, visualizer_id: str) -> None:
        self._registrations.pop(visualizer_id, None)
        cleanup = self._cleanups.pop(visualizer_id, None)
        if cleanup is not None:
            cleanup()

    def get_registration(self, visualizer_id: str) -> Optional[VisualizerRegistration]:
        with self._lock:
            return self._registrations.get(visualizer_id)

    def is_registered(self, visualizer_id: str) -> bool:
        with self._lock:
            return visualizer_id in self._registrations

    # -------------------------------------------------------------------------
    # Event handlers
    # -------------------------------------------------------------------------

    def handle_hover_start(self, visualizer_id: str, meta: Optional[HoverMeta] = None) -> None:
        meta = meta or HoverMeta()
        with self._lock:
            registration = self._registrations.get(visualizer_id)
            if registration is None:
                return
            self._mark_activity()

            self._fire(HOVER_TARGET, registration, magnitude=1.0, polarity=1, index=meta.index)
            self._fire(
                HOVER_SIBLING,
                registration,
                magnitude=sibling_magnitude(meta.total),
                polarity=-1,
                index=meta.index,
            )
            self.consciousness.signal_interaction('hover')

    def handle_hover_end(self, visualizer_id: str) -> None:
        with self._lock:
            registration = self._registrations.get(visualizer_id)
            if registration is None:
                return
            self._mark_activity()

            self._fire(HOVER_TARGET, registration, magnitude=1.0, polarity=-1)
            self._fire(HOVER_SIBLING, registration, magnitude=1.0, polarity=1)

    def handle_focus(self, visualizer_id: str) -> None:
        with self._lock:
            registration = self._registrations.get(visualizer_id)
            if registration is None:
                return
            self._mark_activity()

            self._fire(FOCUS, registration, magnitude=1.0, polarity=1)
            self.consciousness.signal_interaction('focus')

    def handle_blur(self, visualizer_id: str) -> None:
        with self._lock:
            registration = self._registrations.get(visualizer_id)
            if registration is None:
                return
            self._mark_activity()

            self._fire(FOCUS_RELEASE, registration, magnitude=1.0, polarity=-1)

    def handle_click(self, visualizer_id: str) -> None:
        with self._lock:
            registration = self._registrations.get(visualizer_id)
            if registration is None:
                return
            self._mark_activity()

            self._fire(REALITY_INVERSION, registration, magnitude=1.0, polarity=1)
            self.consciousness.signal_interaction('reality-inversion')

    def _fire(
        self,
        trigger: str,
        registration: VisualizerRegistration,
        magnitude: float,
        polarity: int,
        index: Optional[int] = None,
    ) -> None:
        self.store.trigger_parameter_cascade(trigger, CascadeContext(
            section_id=registration.section_id,
            layer_type=registration.layer,
            target_id=registration.id,
            target_index=index,
            magnitude=magnitude,
            polarity=polarity,
        ))

    # -------------------------------------------------------------------------
    # Idle detection
    # -------------------------------------------------------------------------

    @property
    def idle_threshold_ms(self) -> float:
        return self._idle_threshold_ms

    def set_idle_threshold(self, milliseconds: float) -> None:
        """Set the idle window, floored at one second."""
        self._idle_threshold_ms = max(MIN_IDLE_THRESHOLD_MS, float(milliseconds))

    @property
    def idle_fire_count(self) -> int:
        return self._idle_fires

    def elapsed_since_activity(self) -> float:
        return self._clock_ms - self._last_activity_ms

    def _mark_activity(self) -> None:
        self._last_activity_ms = self._clock_ms

    def tick(self, delta_ms: float) -> bool:
        """
        Advance the idle clock.

        Returns:
            True if an idleFlux trigger fired on this tick
        """
        if not math.isfinite(delta_ms) or delta_ms <= 0:
            return False

        with self._lock:
            self._clock_ms += delta_ms

            elapsed = self.elapsed_since_activity()
            if elapsed <= self._idle_threshold_ms:
                return False

            magnitude = min(1.0, elapsed / self.idle_ramp_ms)
            self._last_activity_ms = self._clock_ms
            self._idle_fires += 1
            logger.debug(f"Idle for {elapsed:.0f} ms, firing idleFlux (magnitude={magnitude:.3f})")

            self.store.trigger_parameter_cascade(IDLE_FLUX, CascadeContext(
                layer_type=LayerType.BACKGROUND.value,
                magnitude=magnitude,
                polarity=1,
            ))
            self.consciousness.signal_interaction('idle')
            return True

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._loop is not None and self._loop.running

    def start(self) -> None:
        """Poll for idleness from a background TickLoop. No-op if running or disposed."""
        if self._disposed or self.running:
            return
        self._loop = TickLoop(self.tick, target_hz=self.store.config.tick_hz, name="idle")
        self._loop.start()

    def stop(self) -> None:
        """Stop idle polling. No-op if stopped."""
        if self._loop is None:
            return
        self._loop.stop()
        self._loop = None

    def dispose(self) -> None:
        """Stop polling and unregister every element."""
        if self._disposed:
            return
        self.stop()
        with self._lock:
            for visualizer_id in list(self._registrations):
                self._remove(visualizer_id)
            self._disposed = True
        logger.info("InteractionCoordinator disposed")


__all__ = [
    'DEFAULT_IDLE_THRESHOLD_MS',
    'MIN_IDLE_THRESHOLD_MS',
    'HOVER_TARGET',
    'HOVER_SIBLING',
    'FOCUS',
    'FOCUS_RELEASE',
    'REALITY_INVERSION',
    'IDLE_FLUX',
    'VisualizerRegistration',
    'HoverMeta',
    'sibling_magnitude',
    'InteractionCoordinator',
]
