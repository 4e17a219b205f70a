"""
Holoweb Test Configuration
==========================

Shared fixtures: a controllable clock, a store over a small identity-ruled
section table, and a coordinator wired to it.
"""

import os
import sys

import pytest

# Add parent path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from holoweb import (
    CascadeStore,
    ConsciousnessEstimator,
    InteractionCoordinator,
    SectionDerivationRule,
)


class FakeClock:
    """Manually advanced clock, in seconds."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def estimator(clock):
    return ConsciousnessEstimator(clock=clock)


@pytest.fixture
def store(clock):
    """Store with the stock cascades and the stock section table."""
    s = CascadeStore(clock=clock)
    yield s
    s.dispose()


@pytest.fixture
def plain_sections():
    """Two identity sections, so derived values equal home plus deltas."""
    return {'a': SectionDerivationRule(), 'b': SectionDerivationRule()}


@pytest.fixture
def coordinator(store):
    c = InteractionCoordinator(store)
    yield c
    c.dispose()


@pytest.fixture
def trigger_log(store, monkeypatch):
    """Record every (trigger, context) the store receives, then pass it on."""
    calls = []
    original = store.trigger_parameter_cascade

    def spy(trigger_name, context=None):
        calls.append((trigger_name, context))
        return original(trigger_name, context)

    monkeypatch.setattr(store, "trigger_parameter_cascade", spy)
    return calls
